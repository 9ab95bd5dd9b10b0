"""Constants for the personality provider."""

# Remote settings keys
RECIPE_SETTINGS_KEY = "personality-provider-recipe"
"""Remote settings key holding the active recipe definition."""

MODEL_SETTINGS_KEY_TEMPLATE = "personality-provider-models-{family}-{topic}"
"""Remote settings key for a trained model blob, per model family and topic."""

DEFAULT_TAGGER_TOPIC = "all"
"""Topic used for tagger models when the recipe does not name one."""

# Interest vector persistence
INTEREST_VECTOR_STORE_NAME = "interest-vector"
"""Name of the persistent interest vector store."""

INTEREST_VECTOR_KEY = "interest-vector"
"""Key under which the finalized interest vector is stored."""

INTEREST_VECTOR_FILENAME = "interest-vector.json"
"""File name of the interest vector store inside the state directory."""

# Scoring
UNRANKABLE_SCORE = -1.0
"""Sentinel relevance score for items that cannot be ranked."""

# History query defaults
DEFAULT_HISTORY_LIMIT_SECS = 90 * 24 * 60 * 60
"""How far back history is read when the recipe does not say (90 days)."""

DEFAULT_MAX_HISTORY_RESULTS = 3000
"""Maximum number of history entries fed into a single build."""

# Recency buckets, most recent first
DEFAULT_TIME_SEGMENTS = [
    {"id": "hour", "start_offset_seconds": None, "end_offset_seconds": 3600, "weight": 1.0},
    {"id": "day", "start_offset_seconds": 3600, "end_offset_seconds": 86400, "weight": 0.75},
    {"id": "week", "start_offset_seconds": 86400, "end_offset_seconds": 604800, "weight": 0.5},
    {"id": "weekPlus", "start_offset_seconds": 604800, "end_offset_seconds": None, "weight": 0.25},
]
"""Default time segment table: hour, day, week and everything older."""
