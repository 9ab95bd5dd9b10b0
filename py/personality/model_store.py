"""Memoized access to trained tagger models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from .constants import MODEL_SETTINGS_KEY_TEMPLATE
from .errors import InvalidModelFamily
from .remote_settings import RemoteSettings


class ModelFamily(str, Enum):
    """Tagger model families."""

    NB = "nb"
    NMF = "nmf"


def parse_model_family(value: Union[str, ModelFamily], context: str = "get model") -> ModelFamily:
    """
    Resolve a caller-supplied family discriminator.

    Raises:
        InvalidModelFamily: for anything other than ``nb`` or ``nmf``
    """
    try:
        return ModelFamily(value)
    except ValueError:
        raise InvalidModelFamily(
            f"Personality provider received unexpected model for {context}: {value}"
        ) from None


ModelKey = Tuple[ModelFamily, str]


class ModelStore:
    """Fetches model blobs from remote settings, once per (family, topic).

    Cached blobs are never evicted; a new store is needed to pick up
    updated models.
    """

    def __init__(
        self,
        remote_settings: RemoteSettings,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.remote_settings = remote_settings
        self.logger = logger or structlog.get_logger(__name__)
        self._models: Dict[ModelKey, Dict[str, Any]] = {}

    @property
    def cached_keys(self) -> List[ModelKey]:
        return list(self._models)

    async def get_model(self, family: Union[str, ModelFamily], topic: str) -> Dict[str, Any]:
        """Return the model blob for ``(family, topic)``, fetching it on first use."""
        key = (parse_model_family(family), topic)
        model = self._models.get(key)
        if model is None:
            settings_key = MODEL_SETTINGS_KEY_TEMPLATE.format(family=key[0].value, topic=topic)
            self.logger.debug("model_store.fetch", family=key[0].value, topic=topic, key=settings_key)
            model = await self.remote_settings.get(settings_key)
            self._models[key] = model
        return model
