from setuptools import setup, find_packages

setup(
    name="livequery",
    version="0.1.0",
    description="Live queries: shared change-feed subscriptions folded into snapshots",
    author="Metafor Team",
    packages=find_packages(include=["livequery", "livequery.*"]),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "httpx",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
