"""
Setup script for Report Job Orchestrator

An asynchronous report generation engine: prioritized report jobs, a bounded
worker pool with progress and cooperative cancellation, retries with
exponential backoff, recurring schedules, templates and expiring downloads.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Report Job Orchestrator

    An asynchronous report generation engine with priority dispatch, leases,
    retries with backoff, recurring schedules, templates and time-limited
    report downloads.
    """

setup(
    name="report-job-orchestrator",
    version="1.0.0",
    description="Asynchronous report job orchestration with scheduling, retries and expiring downloads",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Report Job Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="reports, job orchestration, scheduling, async",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "examples.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "typing-extensions>=4.0.0",

        # Async file I/O for report artifacts
        "aiofiles>=23.1.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Schedule recurrence (months, quarters, DST-aware timezones)
        "python-dateutil>=2.8.2",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "fastapi>=0.100.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "fastapi>=0.100.0",
        ],
        "web": [
            "fastapi>=0.100.0",
            "uvicorn>=0.20.0",
        ],
        "all": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "fastapi>=0.100.0",
            "uvicorn>=0.20.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "report-orchestrator=report_job_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "report_job_orchestrator": [
            "sql/*.sql",
        ],
    },
)
