"""
Setup script for Production Flow Orchestrator

Tracks production units through conditionally-branching manufacturing step
sequences and propagates step events through automation rules and signed
outgoing webhooks.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Production Flow Orchestrator

    Tracks production units through ordered, conditionally-branching sequences
    of manufacturing steps, with automation rules and signed outgoing webhooks
    featuring retry/backoff and health-based auto-disable.
    """

setup(
    name="production-flow-orchestrator",
    version="1.0.0",
    description="Step execution model and event dispatch pipeline for production unit tracking",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Production Flow Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Manufacturing",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Systems Administration",
    ],
    keywords="manufacturing, production, workflow, webhooks, automation, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Outgoing webhooks
        "httpx>=0.24.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "production-flow-orchestrator=production_flow_orchestrator.cli.main:main",
            "pfo=production_flow_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "production_flow_orchestrator": [
            "sql/*.sql",
        ],
    },
)
