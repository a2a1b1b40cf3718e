#!/usr/bin/env python3
# =============================================================================
#  taintflow — setup.py
#
#  The version lives in taintflow/__init__.py; this file reads it from
#  there so there is a single source of truth.
#
#  Typical use:
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

# ---------------------------------------------------------------------------
#  Read version from the package so we have a single source of truth.
# ---------------------------------------------------------------------------
_HERE = Path(__file__).resolve().parent


def _read_version() -> str:
    """Extract ``__version__`` from taintflow/__init__.py."""
    init = _HERE / "taintflow" / "__init__.py"
    text = init.read_text(encoding="utf-8")
    match = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if match:
        return match.group(1)
    return "0.0.0"


def _read_long_description() -> str:
    """Read README.md for the long description."""
    readme = _HERE / "README.md"
    if readme.exists():
        return readme.read_text(encoding="utf-8")
    return ""


setup(
    name="taintflow",
    version=_read_version(),
    description=(
        "Interprocedural IFDS taint-flow engine with summary-based context "
        "sensitivity and host/script cross-runtime flows."
    ),
    long_description=_read_long_description(),
    long_description_content_type="text/markdown",
    license="MIT",
    author="taintflow contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "taintflow",
            "taintflow.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    package_data={
        "taintflow": ["py.typed"],
    },
    install_requires=[],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "ruff>=0.4",
            "mypy>=1.10",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Quality Assurance",
        "Topic :: Security",
        "Typing :: Typed",
    ],
    keywords=[
        "static-analysis",
        "taint-analysis",
        "IFDS",
        "data-flow",
        "interprocedural",
        "program-analysis",
    ],
    zip_safe=False,
)
