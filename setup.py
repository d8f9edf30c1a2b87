from setuptools import setup, find_packages

setup(
    name="bucketguard",
    version="0.1.0",
    packages=find_packages(include=["bucketguard", "bucketguard.*"]),
    python_requires=">=3.12",
    install_requires=[
        "redis>=5.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "fakeredis[lua]>=2.20",
        ],
    },
)
