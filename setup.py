"""
Setup script for recall-deck.

recall is a spaced-repetition study engine for flashcard decks. It serves
three roles:

1. Scheduler - FSRS memory model with a two-grade (Again/Good) review flow
2. Study client - Resumable terminal study sessions with a daily new-card cap
3. Offline-first store - Local SQLite progress with optional remote sync

The 'recall' command is the entry point.
"""

from setuptools import find_packages, setup

setup(
    name="recall-deck",
    version="1.0.0",
    description="Offline-first spaced repetition flashcards with FSRS scheduling",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="recall contributors",
    packages=find_packages(include=["recall", "recall.*"]),
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "aiosqlite>=0.19.0",
        "sqlalchemy>=2.0.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "recall=recall.delivery.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning spaced-repetition fsrs flashcards cli education",
)
