"""
DLT Sandbox Setup
"""

from pathlib import Path

from setuptools import setup, find_packages

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text(encoding="utf-8") if readme.exists() else ""

setup(
    name="dlt-sandbox",
    version="0.3.0",
    author="DLT Sandbox Team",
    description="Tick-driven simulator for PoW, PoS, Raft and PBFT ledger networks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["dltsim", "dltsim.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pycryptodome>=3.19.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "dltsim-run=dltsim.simulation.runner:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="blockchain consensus simulation pow pos raft pbft",
)
