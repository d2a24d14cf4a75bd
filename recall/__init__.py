"""
recall: spaced-repetition study engine.

Schedules flashcard reviews with the FSRS memory model, selects each day's
cards under a new-card cap, runs resumable study sessions against a local
SQLite store and pushes progress to an optional remote store.
"""

__version__ = "1.0.0"
