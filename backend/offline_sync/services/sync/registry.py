"""
Adapter registry

Holds one EntityAdapter per entity type for each Flask app. Adapters can be
registered in code or listed in the SYNC_ADAPTERS setting as import paths.
"""
from typing import Dict, List, Optional

from flask import current_app
from werkzeug.utils import import_string

from ...utils.logger import get_logger
from .errors import ValidationError

logger = get_logger('registry')

EXTENSION_KEY = 'offline_sync_adapters'


class AdapterRegistry:
    """Per-app mapping of entity type -> adapter instance."""

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        adapters = app.extensions.setdefault(EXTENSION_KEY, {})
        for entity_type, path in (app.config.get('SYNC_ADAPTERS') or {}).items():
            adapter_cls = import_string(path)
            adapters[entity_type] = self._prepare(entity_type, adapter_cls())
            logger.info(f"Registered adapter {path} for '{entity_type}'")

    @staticmethod
    def _prepare(entity_type, adapter):
        if adapter.entity_type is None:
            adapter.entity_type = entity_type
        return adapter

    def _adapters(self, app=None) -> Dict[str, object]:
        app = app or current_app
        return app.extensions.setdefault(EXTENSION_KEY, {})

    def register(self, entity_type: str, adapter, app=None):
        self._adapters(app)[entity_type] = self._prepare(entity_type, adapter)
        return adapter

    def unregister(self, entity_type: str, app=None) -> None:
        self._adapters(app).pop(entity_type, None)

    def get(self, entity_type: str, app=None) -> Optional[object]:
        return self._adapters(app).get(entity_type)

    def require(self, entity_type: str, app=None):
        adapter = self.get(entity_type, app)
        if adapter is None:
            raise ValidationError(
                f"Unsupported entity type: {entity_type}",
                details={'supported': self.entity_types(app)},
            )
        return adapter

    def entity_types(self, app=None) -> List[str]:
        return sorted(self._adapters(app))


adapter_registry = AdapterRegistry()
