# -*- coding: utf-8 -*-
"""
Vocabulary models.

Validation consults a ``VocabularySnapshot``: a read-only copy of the active
code lists, loaded once per staging run and passed in explicitly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from utils.datetime_utils import utc_now, to_isoformat


@dataclass
class Vocabulary:
    """A controlled code list, e.g. ``building_type`` or ``relation_type``."""
    name: str
    version: str
    values: List[Dict[str, Any]] = field(default_factory=list)
    display_name_ar: Optional[str] = None
    display_name_en: Optional[str] = None
    is_active: bool = True
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def codes(self) -> FrozenSet[str]:
        return frozenset(str(v.get('code')) for v in self.values if v.get('code') is not None)

    @property
    def major_version(self) -> Optional[int]:
        try:
            return int(str(self.version).split('.')[0])
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'version': self.version,
            'values': self.values,
            'display_name_ar': self.display_name_ar,
            'display_name_en': self.display_name_en,
            'updated_at': to_isoformat(self.updated_at),
        }


class VocabularySnapshot:
    """Immutable view of the active vocabularies."""

    def __init__(self, vocabularies: List[Vocabulary]):
        self._codes: Mapping[str, FrozenSet[str]] = MappingProxyType(
            {v.name: v.codes for v in vocabularies})
        self._versions: Mapping[str, str] = MappingProxyType(
            {v.name: v.version for v in vocabularies})

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._codes.keys())

    @property
    def versions(self) -> Dict[str, str]:
        return dict(self._versions)

    def has_vocabulary(self, name: str) -> bool:
        return name in self._codes

    def is_valid_code(self, name: str, code: Any) -> bool:
        """Unknown vocabularies accept nothing; check ``has_vocabulary`` first."""
        if code is None:
            return False
        return str(code) in self._codes.get(name, frozenset())

    def version_of(self, name: str) -> Optional[str]:
        return self._versions.get(name)
