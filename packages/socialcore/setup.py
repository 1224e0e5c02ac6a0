from setuptools import find_packages, setup

setup(
    name="socialcore",
    version="0.1.0",
    description="Shared publish pipeline package for the social publisher API and worker",
    packages=find_packages(),
    install_requires=["SQLAlchemy>=2.0", "httpx>=0.27"],
)
