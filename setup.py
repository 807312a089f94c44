"""
Packaging for condexec, the conditional execution engine.
"""
from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="condexec",
    version="0.1.0",
    description="Conditional execution engine for Binance spot and USDT-M futures",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Trading System Team",
    license="MIT",
    packages=find_packages(include=["condexec", "condexec.*"]),
    scripts=[
        "scripts/run_engine.py",
        "scripts/order_manager.py",
        "scripts/migrate.py",
    ],
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.28.0,<3.0",
        "urllib3>=1.26.0,<3.0",
        "pyyaml>=6.0,<7.0",
        "loguru>=0.7.0,<1.0",
        "pydantic>=2.0.0,<3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0,<9.0",
            "pytest-asyncio>=0.21.0,<1.0",
        ],
        "dev": [
            "ruff>=0.1.0,<1.0",
            "mypy>=1.0.0,<2.0",
            "pytest-cov>=4.0.0,<6.0",
            "sphinx>=6.0.0,<8.0",
            "sphinx-rtd-theme>=1.2.0,<3.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Topic :: Office/Business :: Financial :: Investment",
    ],
)
