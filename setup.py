"""
Setup Configuration for metagrowth
==================================

setup.py with tiered dependency groups and development tooling.

Key Features:
- Core numerical stack (numpy, scipy, pandas, arviz) plus PyYAML
- Optional dependency groups (pip install metagrowth[test])
- Development tooling integration
"""

import sys
from pathlib import Path

from setuptools import find_packages, setup

# Get the directory containing setup.py
HERE = Path(__file__).parent.resolve()


def read_readme():
    """Read README file for long description."""
    readme_path = HERE / "README.md"
    if readme_path.exists():
        return readme_path.read_text(encoding="utf-8")
    return "Bayesian growth-curve meta-models of forest growth simulators"


def read_version():
    """Read version from package __init__.py."""
    init_path = HERE / "metagrowth" / "__init__.py"
    if init_path.exists():
        with open(init_path, encoding="utf-8") as f:
            for line in f:
                if line.startswith("__version__"):
                    return line.split("=")[1].strip().strip("\"'")
    return "1.0.0"


# Define dependency groups
INSTALL_REQUIRES = [
    # Core dependencies (always required)
    "numpy>=1.24.0",
    "scipy>=1.10.0",
    "pyyaml>=6.0",
    "pandas>=1.5.0",
    "arviz>=0.15.0,<1.0",
]

EXTRAS_REQUIRE = {
    # Test suite
    "test": [
        "pytest>=7.0.0",
    ],
    # Development dependencies
    "dev": [
        "pytest>=7.0.0",
        "pytest-cov>=4.0.0",
        "black>=23.0.0",
        "ruff>=0.1.0",
        "mypy>=1.0.0",
    ],
}

# Combine extras for convenience
EXTRAS_REQUIRE["all"] = sorted(set(sum(EXTRAS_REQUIRE.values(), [])))

# Classifiers for PyPI
CLASSIFIERS = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Topic :: Scientific/Engineering",
    "License :: OSI Approved :: MIT License",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Operating System :: OS Independent",
]

# Keywords for PyPI search
KEYWORDS = [
    "forestry", "growth model", "chapman-richards", "meta-model",
    "bayesian", "mcmc", "metropolis-hastings", "mixed effects",
]


def check_python_version():
    """Check if Python version is supported."""
    if sys.version_info < (3, 10):
        print("Python 3.10 or higher is required")
        print(f"   Current version: {sys.version}")
        sys.exit(1)


if __name__ == "__main__":
    check_python_version()

    setup(
        # Basic package information
        name="metagrowth",
        version=read_version(),
        description="Bayesian growth-curve meta-models of forest growth simulators",
        long_description=read_readme(),
        long_description_content_type="text/markdown",
        author="metagrowth Development Team",
        # Package discovery and inclusion
        packages=find_packages(exclude=["tests*", "docs*", "examples*"]),
        include_package_data=True,
        # Dependencies
        install_requires=INSTALL_REQUIRES,
        extras_require=EXTRAS_REQUIRE,
        python_requires=">=3.10",
        # Metadata for PyPI
        classifiers=CLASSIFIERS,
        keywords=KEYWORDS,
        license="MIT",
        zip_safe=False,
        platforms=["any"],
    )
