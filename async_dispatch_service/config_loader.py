"""Configuration loader for CRM integrations."""

from __future__ import annotations

import configparser
import json
from pathlib import Path
from typing import Any, Dict, List

from async_dispatch_service.crm import ADAPTERS
from async_dispatch_service.logger import get_logger
from async_dispatch_service.pipeline import validate_action_settings

logger = get_logger("IntegrationConfigLoader")

_JSON_FIELDS = ("credentials", "settings")
_TEXT_FIELDS = ("provider", "tenant_id", "sync_mode")


class IntegrationConfigLoader:
    """Load CRM integration definitions from config.ini."""

    def __init__(self, config_path: str):
        """Initialize with path to config.ini file."""
        self.config_path = config_path
        self.config = configparser.ConfigParser()

    def load_config(self) -> None:
        """Load the configuration file."""
        if not Path(self.config_path).exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        self.config.read(self.config_path)

    def parse_integrations(self) -> List[Dict[str, Any]]:
        """Parse integrations from the [integrations] section.

        Expected format in config.ini:
        ```ini
        [integrations]
        integration.acme-pd.provider = pipedrive
        integration.acme-pd.tenant_id = acme
        integration.acme-pd.credentials = {"api_token": "..."}
        integration.acme-pd.settings = {"account_id": "wa-1", "message_template": "Hi {first_name}"}
        integration.acme-pd.sync_mode = webhook
        integration.acme-pd.active = true
        ```

        Returns:
            List of integration dictionaries ready for ``Persistence.add_integration``
        """
        if not self.config.has_section("integrations"):
            logger.info("No [integrations] section found in config file")
            return []

        integrations_dict: Dict[str, Dict[str, Any]] = {}

        for key, value in self.config.items("integrations"):
            if not key.startswith("integration."):
                logger.warning("Ignoring invalid key in [integrations] section: %s", key)
                continue

            parts = key.split(".", 2)
            if len(parts) != 3:
                logger.warning("Invalid integration key format: %s", key)
                continue

            _, integration_id, field = parts
            entry = integrations_dict.setdefault(integration_id, {"id": integration_id})

            if field in _TEXT_FIELDS:
                entry[field] = value.strip()
            elif field in _JSON_FIELDS:
                try:
                    entry[field] = json.loads(value)
                except json.JSONDecodeError as e:
                    logger.error("Invalid JSON in integration.%s.%s: %s", integration_id, field, e)
                    raise ValueError(f"Invalid JSON in integration.{integration_id}.{field}: {e}")
            elif field == "active":
                entry["active"] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                logger.warning("Unknown integration field: %s (in %s)", field, key)

        integrations: List[Dict[str, Any]] = []
        for integration_id, data in integrations_dict.items():
            for required in ("provider", "tenant_id"):
                if not data.get(required):
                    logger.error("Integration '%s' missing required field '%s'", integration_id, required)
                    raise ValueError(f"Integration '{integration_id}' missing required field '{required}'")
            data["provider"] = data["provider"].lower()
            if data["provider"] not in ADAPTERS:
                raise ValueError(f"Integration '{integration_id}' uses unsupported provider '{data['provider']}'")
            problems = validate_action_settings(data.get("settings"))
            if problems:
                raise ValueError(f"Integration '{integration_id}' has invalid settings: {'; '.join(problems)}")
            if not data.get("sync_mode"):
                data["sync_mode"] = "webhook" if ADAPTERS[data["provider"]].supports_webhooks else "polling"
            integrations.append(data)

        logger.info("Parsed %d integrations from config", len(integrations))
        return integrations

    async def load_into_db(self, persistence, overwrite: bool = False) -> int:
        """Load parsed integrations into the database.

        Args:
            persistence: Persistence instance
            overwrite: If False (default), only loads integrations that don't exist.
                       If True, updates existing ones (cursor and webhook state are kept).

        Returns:
            Number of integrations loaded
        """
        integrations = self.parse_integrations()
        if not integrations:
            return 0

        if not overwrite:
            existing = await persistence.list_integrations(active_only=False)
            existing_ids = {item["id"] for item in existing}
            integrations = [item for item in integrations if item["id"] not in existing_ids]
            if not integrations:
                logger.info("All config integrations already exist in database")
                return 0

        for integration in integrations:
            await persistence.add_integration(integration)
        logger.info("Loaded %d integrations into database", len(integrations))
        return len(integrations)


async def load_integrations_from_config(
    config_path: str,
    persistence,
    overwrite: bool = False
) -> int:
    """Convenience function to load integrations from a config file."""
    loader = IntegrationConfigLoader(config_path)
    loader.load_config()
    return await loader.load_into_db(persistence, overwrite=overwrite)
