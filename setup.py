"""
Setup configuration for cadence-messenger package.
"""

from setuptools import setup
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="cadence-messenger",
    version="0.1.0",
    description="Send text messages on recurring, drift-free schedules",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    py_modules=[
        "config",
        "models",
        "store",
        "transport",
        "content_source",
        "messaging",
    ],
    packages=["scheduler"],

    # Dependencies
    install_requires=[
        "requests>=2.31.0",
        "APScheduler>=3.10.0,<4",
        "SQLAlchemy>=1.4",
        "python-dotenv>=1.0.0",
        "python-dateutil>=2.8.2",
        "tzdata",  # IANA zones where the OS ships none
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement (zoneinfo)
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "cadence=scheduler.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Communications :: Telephony",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="sms scheduler recurring messages apscheduler",

    include_package_data=True,
)
