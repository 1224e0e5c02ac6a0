from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from socialcore.db import SessionLocal
from socialcore.models import ConnectedAccount, CreditBalance, Platform, Post, PostStatus
from socialcore.timeutil import utc_now

DEMO_USER_ID = "demo-user"


def main() -> None:
    now = utc_now()
    with SessionLocal() as session, session.begin():
        session.add(CreditBalance(user_id=DEMO_USER_ID, credits_remaining=Decimal("25.00")))
        session.add(
            ConnectedAccount(
                user_id=DEMO_USER_ID,
                platform=Platform.instagram,
                account_id="17841400000000000",
                account_username="demo.instagram",
                access_token="demo-instagram-token",
                token_expires_at=now + timedelta(days=60),
            )
        )
        session.add(
            ConnectedAccount(
                user_id=DEMO_USER_ID,
                platform=Platform.threads,
                account_id="27841400000000000",
                account_username="demo.threads",
                access_token="demo-threads-token",
                token_expires_at=now + timedelta(days=60),
            )
        )
        session.add(
            Post(
                user_id=DEMO_USER_ID,
                caption="Demo launch post",
                media_urls=["https://cdn.example.com/demo.jpg"],
                platforms=[Platform.instagram.value, Platform.threads.value],
                instagram_content_type="feed",
                threads_content_type="image",
                status=PostStatus.scheduled,
                scheduled_for=now + timedelta(minutes=5),
                post_metadata={},
            )
        )
    print("seed completed")


if __name__ == "__main__":
    main()
