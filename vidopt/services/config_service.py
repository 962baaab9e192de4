"""Preference service.

The orchestrator reads preferences as plain key lookups through
``get_config``; only the settings route calls ``update_config``.
"""

import logging
from pathlib import Path

from sqlmodel import select

from vidopt.core.errors import ConfigurationError
from vidopt.core.presets import PRESETS
from vidopt.database import async_session
from vidopt.models.app_config import AppConfig

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = {"tmdb_api_key"}


def _platform_default_output_dir() -> str:
    return str(Path.home() / "Videos" / "vidopt")


async def get_config() -> AppConfig:
    """Get the current preferences, creating defaults if none exist."""
    async with async_session() as session:
        result = await session.execute(select(AppConfig).limit(1))
        config = result.scalar_one_or_none()

        if config is None:
            config = AppConfig(default_output_dir=_platform_default_output_dir())
            session.add(config)
            await session.commit()
            await session.refresh(config)
            logger.info(f"Created default preferences (output: {config.default_output_dir})")

        return config


async def get_preference(key: str, default=None):
    """Read one preference by key."""
    config = await get_config()
    return getattr(config, key, default)


async def update_config(**kwargs) -> AppConfig:
    """Update preferences with provided values.

    Args:
        **kwargs: Field names and values to update

    Returns:
        Updated AppConfig instance

    Raises:
        ConfigurationError: unknown default preset
    """
    preset = kwargs.get("default_preset")
    if preset is not None and preset not in PRESETS:
        raise ConfigurationError(f"Unknown preset: {preset}")

    async with async_session() as session:
        result = await session.execute(select(AppConfig).limit(1))
        config = result.scalar_one_or_none()

        if config is None:
            config = AppConfig(default_output_dir=_platform_default_output_dir())
            session.add(config)

        for key, value in kwargs.items():
            if key == "id" or not hasattr(config, key):
                continue
            if value is None:
                continue
            # Don't wipe a stored API key with an empty form field
            if key in SENSITIVE_FIELDS and isinstance(value, str) and not value.strip():
                continue
            setattr(config, key, value)

        await session.commit()
        await session.refresh(config)

        logger.info(f"Updated preferences: {list(kwargs.keys())}")
        return config
