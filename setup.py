"""Setup script for the Skillflow package."""

from setuptools import setup, find_packages

setup(
    name="skillflow",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "httpx>=0.27",
        "prometheus-client>=0.20",
        "tenacity>=8.2",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={"console_scripts": ["skillflow=skillflow.__main__:main"]},
    description="Skillflow - adaptive plan, dispatch and recovery for multi-step automation",
    author="Skillflow Team",
)
