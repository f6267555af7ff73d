#!/usr/bin/env python3
"""Setup script for Spexus."""
from setuptools import setup, find_packages

setup(
    name="spexus",
    version="1.0.0",
    description="Requirements management exposed over the Model Context Protocol",
    author="Spexus Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "PyYAML>=6.0",
        "flask>=2.0.0",
        "flask-cors>=3.0.10",
    ],
    extras_require={
        "test": [
            "pytest>=6.2.5",
        ],
    },
    entry_points={
        "console_scripts": [
            "spexus=spexus.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
