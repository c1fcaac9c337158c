"""Configuration module for loading environment variables."""

import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_env_var(
    name: str, default: str | None = None, required: bool = True
) -> str | None:
    """Get environment variable with optional default value."""
    value = os.getenv(name, default)
    if required and value is None:
        logger.warning("Missing required environment variable: %s", name)
    return value


def require_env_value(name: str, value: str | None) -> str:
    """Return a configured value or fail at the point of use."""
    if value is None or value == "":
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default


# Session cookie verification
SESSION_SECRET: str | None = get_env_var("SESSION_SECRET")
SESSION_COOKIE_NAME: str = os.getenv("SESSION_COOKIE_NAME", "session")

# Discord bot / guild configuration
DISCORD_BOT_TOKEN: str | None = get_env_var("DISCORD_BOT_TOKEN")
DISCORD_GUILD_ID: str | None = get_env_var("DISCORD_GUILD_ID")
DISCORD_STAFF_ROLE_ID: str | None = get_env_var("DISCORD_STAFF_ROLE_ID")
DISCORD_MEMBER_ROLE_ID: str | None = get_env_var("DISCORD_MEMBER_ROLE_ID")
DISCORD_APPLICANT_ROLE_ID: str | None = get_env_var(
    "DISCORD_APPLICANT_ROLE_ID", required=False
)
DISCORD_API_BASE_URL: str = os.getenv(
    "DISCORD_API_BASE_URL", "https://discord.com/api/v10"
)

# Channels for announcements and application logs
PROMOTION_ANNOUNCE_CHANNEL_ID: str | None = get_env_var(
    "PROMOTION_ANNOUNCE_CHANNEL_ID", required=False
)
APPLICATION_LOG_CHANNEL_ID: str | None = get_env_var(
    "APPLICATION_LOG_CHANNEL_ID", required=False
)

# PostgreSQL configuration
DATABASE_URL: str | None = get_env_var("DATABASE_URL", required=False)

# Marker substring in a display name that shows clan affiliation
CLAN_TAG_MARKER: str = os.getenv("CLAN_TAG_MARKER", "420")

# Import limits
IMPORT_MAX_ROWS: int = get_env_int("IMPORT_MAX_ROWS", 5000)
IMPORT_COOLDOWN_SECONDS: int = get_env_int("IMPORT_COOLDOWN_SECONDS", 60)

# Promotion queue
PROMOTION_CONFIRM_MIN_BATCH: int = get_env_int("PROMOTION_CONFIRM_MIN_BATCH", 5)

# Directory paging (Discord caps list-members at 1000 per page)
DIRECTORY_PAGE_SIZE: int = min(get_env_int("DIRECTORY_PAGE_SIZE", 1000), 1000)

# Roster listing
CLAN_LIST_PAGE_SIZE: int = get_env_int("CLAN_LIST_PAGE_SIZE", 50)

# Rank role ids (entry rank has no role)
RANK_ROLE_CORPORAL: str | None = os.getenv("RANK_ROLE_CORPORAL", "1374050435484094525")
RANK_ROLE_SERGEANT: str | None = os.getenv("RANK_ROLE_SERGEANT", "1378450788069933206")
RANK_ROLE_LIEUTENANT: str | None = os.getenv(
    "RANK_ROLE_LIEUTENANT", "1378450714845778022"
)
RANK_ROLE_MAJOR: str | None = os.getenv("RANK_ROLE_MAJOR", "1378450739885637702")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
