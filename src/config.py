"""
Global settings for StudyGen Tutor.
Everything here is a plain module constant so tests can monkeypatch it.
"""

import os

# App
APP_TITLE = "StudyGen Tutor"
APP_VERSION = "0.3.0"

# API server
API_HOST = os.environ.get("STUDYGEN_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("STUDYGEN_PORT", "8800"))
DEFAULT_USER_ID = "default"

# LLM collaborator
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_MODEL = "gpt-4o"          # outline extraction + learning aids
BRIEFING_MODEL = "gpt-4o-mini"   # short daily briefing
LLM_TIMEOUT_S = 90.0             # per request to the model
AID_WAIT_TIMEOUT_S = 120.0       # how long a coalesced request waits for the in-flight one
MAX_DOCUMENT_CHARS = 60000       # text sent to the outline analyzer
MAX_CONTEXT_CHARS = 12000        # text sent with a learning-aid request

# Personalization defaults (used when a session has none stored)
DEFAULT_PERSONALIZATION = {
    "language": "English",
    "level": "Beginner",
    "tone": "Friendly",
    "goal": "Deep Understanding",
}
VALID_LEVELS = ("Beginner", "Intermediate", "Advanced")
VALID_TONES = ("Strict", "Friendly", "Fast & Focused", "Encouraging", "Academic")
VALID_GOALS = ("Exam Prep", "Deep Understanding", "Study Notes", "Quick Revision")

# Title an onboarding session carries until its first outline is analyzed
ONBOARDING_SESSION_TITLE = "New Study Session"
