"""Shared publish pipeline package for the API and the scheduler worker."""

from .config import PublishSettings
from .content import Issue, PostDraft, PostRequest, build_draft
from .db import Base
from .error_mapper import map_publish_error
from .errors import (
    ChainTooLongError,
    DatabaseUnavailableError,
    InsufficientCreditsError,
    InvalidPostStateError,
    MissingConnectionError,
    PermissionMissingError,
    PostNotFoundError,
    ProviderError,
    PublishError,
    PublishFailure,
    ResourceNotFoundError,
    TokenExpiredError,
    TransientProviderError,
    ValidationError,
)
from .events import log_event
from .interfaces import OwnerScope, PlatformAccount, PublishContent, PublishReceipt
from .ledger import CreditLedger, DelegatedCreditLedger, LocalCreditLedger, calculate_cost
from .orchestrator import OutcomeKind, PublishOrchestrator, PublishOutcome
from .posts import PostService
from .services import PublishServices, build_services
from .thread_chain import split_into_chain

__all__ = [
    "Base",
    "ChainTooLongError",
    "CreditLedger",
    "DatabaseUnavailableError",
    "DelegatedCreditLedger",
    "InsufficientCreditsError",
    "InvalidPostStateError",
    "Issue",
    "LocalCreditLedger",
    "MissingConnectionError",
    "OutcomeKind",
    "OwnerScope",
    "PermissionMissingError",
    "PlatformAccount",
    "PostDraft",
    "PostNotFoundError",
    "PostRequest",
    "PostService",
    "ProviderError",
    "PublishContent",
    "PublishError",
    "PublishFailure",
    "PublishOrchestrator",
    "PublishOutcome",
    "PublishReceipt",
    "PublishServices",
    "PublishSettings",
    "ResourceNotFoundError",
    "TokenExpiredError",
    "TransientProviderError",
    "ValidationError",
    "build_draft",
    "build_services",
    "calculate_cost",
    "log_event",
    "map_publish_error",
    "split_into_chain",
]
