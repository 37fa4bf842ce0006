from setuptools import setup, find_packages
from pathlib import Path

# Read version from version.py
version_file = Path(__file__).parent / "src" / "drift_agent" / "version.py"
version = {}
exec(version_file.read_text(), version)
__version__ = version.get("__version__", "0.1.0")

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="drift-agent",
    version=__version__,
    description="Drift Agent - Fleet inventory and configuration drift history for deployed applications",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Drift Agent Team",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.8.0",
        "aiofiles>=23.0.0",
        "click>=8.0.0",
        "pyyaml>=6.0",
        "pywinrm>=0.4.3",
        "watchdog>=3.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "drift-agent=drift_agent.cli:cli",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
