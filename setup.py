"""Setup script for Contest Crossmatch."""

from setuptools import find_packages, setup

setup(
    name="contest-crossmatch",
    version="0.1.0",
    description="Cross-check radio contest logs against each other",
    packages=find_packages(include=["contest_crossmatch", "contest_crossmatch.*"]),
    python_requires=">=3.11",
    install_requires=[
        "sqlmodel>=0.0.16",
        "SQLAlchemy>=2.0",
        "platformdirs>=4.0",
        "typer>=0.12",
        "rich>=13.0",
        "rapidfuzz>=3.0",
        "loguru>=0.7",
        "psutil>=5.9",
    ],
    extras_require={
        "test": ["pytest>=8.0"],
    },
    entry_points={
        "console_scripts": [
            "contest-crossmatch=contest_crossmatch.cli:main",
        ],
    },
    zip_safe=False,
)
