"""
Setup script for CSV Job Orchestrator

Fault-tolerant orchestration of large CSV processing jobs: lease locks,
deterministic chunking, bounded parallel dispatch, idempotent aggregation
and an append-only audit trail.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    CSV Job Orchestrator

    Fault-tolerant orchestration of large CSV processing jobs with lease
    locks, bounded parallel chunk dispatch, idempotent aggregation and an
    append-only audit trail.
    """

setup(
    name="csv-job-orchestrator",
    version="1.0.0",
    description="Fault-tolerant orchestration of large CSV processing jobs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="CSV Job Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="job orchestration, csv, data processing, leases, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Async IO and networking
        "aiofiles>=23.1.0",
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
    },
    entry_points={
        "console_scripts": [
            "csv-job-orchestrator=csv_job_orchestrator.cli.main:main",
            "cjo=csv_job_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "csv_job_orchestrator": [
            "sql/*.sql",
        ],
    },
)
