#!/usr/bin/env python3
"""
AeroLink Adaptive Link Controller - Setup Script

For development installation:
    pip install -e .[dev]
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read version from package
version = "0.1.0"

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="aerolink",
    version=version,
    description="Adaptive link controller for drone swarm communication",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="AeroLink Project",
    license="Open Source",

    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",

    install_requires=[
        "cryptography>=3.4",
        "toml>=0.10",
    ],

    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=3.0",
        ],
    },

    entry_points={
        "console_scripts": [
            "aerolinkd=aerolink.main:main",
        ],
    },

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Communications",
        "Topic :: Security :: Cryptography",
        "Topic :: System :: Networking",
    ],

    keywords="drone swarm mesh onion-routing link-controller",
)
