"""
SQL Object Dependency Graph Scanner - Object catalog
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from collections import OrderedDict
from typing import Iterable, Iterator, Optional

from .diagnostics import DiagnosticCode, Diagnostics
from .keys import KeyResolver
from .models import ObjectType, SqlObject

logger = logging.getLogger(__name__)


class ObjectCatalog:
    """Read-only lookup of the objects of one run by canonical key.

    Objects keep their input order. When two objects share a key the first one
    wins and a DUPLICATE_OBJECT diagnostic is reported.
    """

    def __init__(self, objects: Iterable[SqlObject], resolver: KeyResolver,
                 diagnostics: Optional[Diagnostics] = None):
        if objects is None:
            raise ValueError("Object catalog requires a collection of objects")
        self.resolver = resolver
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self._objects = OrderedDict()

        for obj in objects:
            if obj is None:
                raise ValueError("Object catalog cannot contain None")
            key = resolver.key_for(obj)
            if key in self._objects:
                self.diagnostics.report(
                    DiagnosticCode.DUPLICATE_OBJECT,
                    f"Duplicate object {obj.qualified_name}; keeping the first definition",
                    object_key=key)
                continue
            self._objects[key] = obj

        logger.debug("Cataloged %d objects", len(self._objects))

    def get(self, key: str) -> Optional[SqlObject]:
        return self._objects.get(key)

    def kind_of(self, key: str) -> Optional[ObjectType]:
        obj = self._objects.get(key)
        return obj.kind if obj is not None else None

    def items(self):
        return self._objects.items()

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def __iter__(self) -> Iterator[SqlObject]:
        return iter(self._objects.values())

    def __len__(self) -> int:
        return len(self._objects)
