"""
seaterm - a line-oriented terminal with an SSH remote-session core.
"""

from setuptools import setup, find_packages
from pathlib import Path

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name="seaterm",
    version="0.1.0",
    description="Line-oriented terminal with SSH login, remote exec, interactive shell and SFTP",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["seaterm", "seaterm.*"]),
    python_requires=">=3.10",
    install_requires=[
        "paramiko>=3.0.0",
        "click>=8.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "seaterm=seaterm.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
        "Topic :: Terminals",
    ],
    keywords="ssh terminal sftp paramiko network",
)
