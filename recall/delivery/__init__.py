"""
Study delivery: scheduling, card selection and study sessions.

Components:
- models: Card, Deck, CardMemoryState, DailyStudyLedger, Grade
- scheduler: FSRSScheduler, the memory model update for one grade
- selector: select_session / DueCardSelector, today's working set for a deck
- session: StudySession, the session state machine (start, grade, resume)
- deck_loader: DeckLoader, local-first deck loading and JSON import
- cli: Rich terminal interface
"""
