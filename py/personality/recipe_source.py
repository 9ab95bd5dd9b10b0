"""Fetch-once access to the active recipe."""

from __future__ import annotations

from typing import Optional

import structlog

from .constants import RECIPE_SETTINGS_KEY
from .models import Recipe
from .remote_settings import RemoteSettings


class RecipeSource:
    """Fetches the recipe on first use and keeps it for the instance lifetime.

    There is no periodic refresh; call ``reset()`` or build a new source to
    pick up an updated recipe.
    """

    def __init__(
        self,
        remote_settings: RemoteSettings,
        key: str = RECIPE_SETTINGS_KEY,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.remote_settings = remote_settings
        self.key = key
        self.logger = logger or structlog.get_logger(__name__)
        self.recipe: Optional[Recipe] = None

    async def get_recipe(self) -> Recipe:
        if self.recipe is None:
            self.logger.debug("recipe.fetch", key=self.key)
            record = await self.remote_settings.get(self.key)
            self.recipe = Recipe.model_validate(record)
        return self.recipe

    def reset(self) -> None:
        self.recipe = None
