"""Environment helpers."""

import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load a local .env file into os.environ without overwriting exported variables.

    WHY: Variables read outside Settings (e.g. the OpenAI SDK's own
    OPENAI_BASE_URL) must see the same .env values as Settings does.

    Returns:
        True if a .env file was found and loaded.
    """
    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (exported variables kept)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded
