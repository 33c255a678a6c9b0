"""Model catalog lookups used to price completed requests."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests

from .config import ChatLLMConfig
from .models import ModelInfo, ModelPricing

logger = logging.getLogger(__name__)


class ModelCatalog:
    """Fetch the list of models offered by the endpoint."""

    def __init__(self, config: Optional[ChatLLMConfig] = None, *, session: Optional[requests.Session] = None) -> None:
        self.config = config or ChatLLMConfig()
        self.session = session or requests.Session()

    def get_models(self, api_key: Optional[str] = None) -> List[ModelInfo]:
        """Return the catalog, or an empty list if it cannot be fetched."""
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        try:
            response = self.session.get(
                self.config.models_endpoint, headers=headers, timeout=self.config.request_timeout
            )
            response.raise_for_status()
            entries = response.json().get("data") or []
            return [ModelInfo.from_catalog(entry) for entry in entries]
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError):
            logger.exception("Error fetching models from %s", self.config.models_endpoint)
            return []


def pricing_table(models: List[ModelInfo]) -> Dict[str, Optional[ModelPricing]]:
    return {info.id: info.pricing for info in models}
