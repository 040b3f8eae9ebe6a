"""
ParamForge — Setup Script
==========================
Installs ParamForge as a local editable package so that all internal
imports (e.g. `from paramforge.training import DistributedMultiLayer`)
work seamlessly from any script or notebook.

Usage:
    cd /path/to/paramforge
    pip install -e .[dev]
"""

from pathlib import Path

from setuptools import setup, find_packages

readme_path = Path(__file__).parent / "README.md"
long_description = (
    readme_path.read_text(encoding="utf-8")
    if readme_path.exists()
    else "ParamForge: data-parallel neural network training by parameter averaging."
)

setup(
    name="paramforge",
    version="0.1.0",
    description=(
        "ParamForge: Data-Parallel Training of Multilayer Networks by "
        "Parameter and Optimizer-State Averaging"
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["paramforge", "paramforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.24.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
