"""
Configuration constants for the cinerank personalization engine.

This module centralizes all thresholds and tunable parameters.
Values can be overridden via environment variables (CINERANK_* prefix).
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CINERANK_DB", "data/cinerank.db"))

# Scoring Sources
SOURCE_TIMEOUT = _get_float_env("CINERANK_SOURCE_TIMEOUT", 8.0, min_val=0.1)  # Per-source timeout in seconds
DEFAULT_MAX_CONCURRENT = _get_int_env("CINERANK_MAX_CONCURRENT", 5, min_val=1)
MAX_HTTP_RETRIES = 3
SOURCE_SEED_LIMIT = 10  # Favourite items used to seed source lookups

# Source reliability weights (weighted average, not a sum)
SOURCE_WEIGHTS = {
    'tmdb': _get_float_env("CINERANK_WEIGHT_TMDB", 0.9),
    'tastedive': _get_float_env("CINERANK_WEIGHT_TASTEDIVE", 1.35),
    'trakt': _get_float_env("CINERANK_WEIGHT_TRAKT", 1.4),
    'tuimdb': _get_float_env("CINERANK_WEIGHT_TUIMDB", 0.85),
    'watchmode': _get_float_env("CINERANK_WEIGHT_WATCHMODE", 0.6),
}

# Consensus level thresholds (distinct agreeing sources)
CONSENSUS_MEDIUM_MIN = _get_int_env("CINERANK_CONSENSUS_MEDIUM_MIN", 2, min_val=1)
CONSENSUS_HIGH_MIN = _get_int_env("CINERANK_CONSENSUS_HIGH_MIN", 4, min_val=1)

# Taste Profile
TOP_GENRES_COUNT = _get_int_env("CINERANK_TOP_GENRES", 5, min_val=1)
WEIGHT_LIKED_NO_RATING = 1.0
LIKED_RATING_THRESHOLD = 4.0      # Rated at or above counts as liked
DISLIKED_RATING_THRESHOLD = 3.0   # Not liked and rated below counts as disliked
AVOID_GENRE_MAX_AVG = 2.5
AVOID_GENRE_MIN_OCCURRENCES = 3

# Subgenre classification
SUBGENRE_MAJOR_GENRES = ['Action', 'Science Fiction', 'Horror', 'Comedy', 'Drama', 'Thriller']
SUBGENRE_PREFERRED_MIN_WATCH_FRACTION = 0.15
SUBGENRE_PREFERRED_MIN_LIKE_RATE = 0.60
SUBGENRE_AVOIDED_MAX_LIKE_RATE = 0.30
SUBGENRE_AVOID_MIN_OCCURRENCES = _get_int_env("CINERANK_SUBGENRE_AVOID_MIN", 3, min_val=1)
SUBGENRE_AVOID_MIN_WATCH_FRACTION = 0.05

# Cross-genre patterns
CROSS_GENRE_MIN_RATING = 3.0          # Films below this (and not liked) are skipped
CROSS_GENRE_MIN_COUNT = 3
CROSS_GENRE_MIN_AVG_RATING = 3.5
CROSS_GENRE_MAX_EXAMPLES = 3
CROSS_GENRE_MAX_KEYWORDS = 15
CROSS_GENRE_KEYWORD_MATCH_BONUS = 0.2
CROSS_GENRE_MIN_STRENGTH = 1.0  # Pattern weight per watched film
CROSS_GENRE_BOOST_SCALE = _get_float_env("CINERANK_CROSS_GENRE_BOOST_SCALE", 0.1)

# Negative patterns
AVOIDED_COMBO_MIN_DISLIKES = 2
AVOIDED_KEYWORD_MIN_MATCHES = 2

# Runtime compatibility
RUNTIME_STRICT_SPREAD = 60   # Minutes; tighter history spread enables the runtime check
RUNTIME_TOLERANCE = 30       # Minutes around the user's average runtime

# Diversity (MMR); lambda is the weight given to diversity
DEFAULT_MMR_LAMBDA = _get_float_env("CINERANK_MMR_LAMBDA", 0.25)

# Adaptive Exploration
DEFAULT_EXPLORATION_RATE = 0.15
EXPLORATION_RATE_MIN = 0.05
EXPLORATION_RATE_MAX = 0.30
EXPLORATION_LEARNING_RATE = 0.05
EXPLORATION_NEGATIVE_PENALTY = 0.02
EXPLORATION_RECENT_WINDOW = 20
EXPLORATION_LIKES_THRESHOLD = 3.5
EXPLORATION_DISLIKES_THRESHOLD = 3.0

# Genre transitions
TRANSITION_WINDOW = 50
TRANSITION_SUCCESS_RATING = 3.5
TRANSITION_MIN_COUNT = 3
TRANSITION_MIN_SUCCESS_RATE = 0.5
TRANSITION_BOOST_WEIGHT = _get_float_env("CINERANK_TRANSITION_BOOST_WEIGHT", 0.1)

# Counterfactual replay
REPLAY_LOOKBACK_DAYS = _get_int_env("CINERANK_REPLAY_LOOKBACK_DAYS", 30, min_val=1)
REPLAY_SERVING_SIZE = _get_int_env("CINERANK_REPLAY_SERVING_SIZE", 50, min_val=1)
REPLAY_RANK_PENALTY = 0.01

# Profile Schema Versioning
# Increment this when TasteProfile fields or profile thresholds change
PROFILE_SCHEMA_VERSION = 1
PROFILE_CACHE_MAX_AGE_DAYS = 7
