"""Twin property documents exchanged on the twin link."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Dict, Optional

VERSION_KEY = "$version"


class TwinDocumentError(ValueError):
    """Raised when a twin document from the hub is malformed."""


class PropertyCollection(Mapping[str, Any]):
    """Read-only view over twin properties.

    Collections received from the hub carry a ``$version`` field; it is exposed
    through :attr:`version` and excluded from iteration. Collections built
    locally (reported patches) carry no version.
    """

    def __init__(self, properties: Mapping[str, Any], *, from_service: bool = False) -> None:
        if properties is None:
            raise TypeError("properties must not be None")
        data = dict(properties)
        self.version: Optional[int] = None
        if from_service:
            version = data.pop(VERSION_KEY, None)
            if isinstance(version, bool) or not isinstance(version, (int, float)):
                raise TwinDocumentError("Properties document either missing version number or not formatted as expected.")
            self.version = int(version)
        self._properties: Dict[str, Any] = data

    def __getitem__(self, key: str) -> Any:
        return self._properties[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._properties)

    def __len__(self) -> int:
        return len(self._properties)

    def get_as(self, key: str, expected: type, default: Any = None) -> Any:
        """Return ``key`` converted to ``expected`` or ``default`` when absent/unconvertible."""

        if key not in self._properties:
            return default
        value = self._properties[key]
        if isinstance(value, expected):
            return value
        try:
            return expected(value)
        except (TypeError, ValueError):
            return default

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._properties)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._properties!r}, version={self.version})"


class DesiredProperties(PropertyCollection):
    """Desired-state requests received from the hub."""

    def __init__(self, properties: Mapping[str, Any]) -> None:
        super().__init__(properties, from_service=True)


class ReportedProperties(PropertyCollection):
    """Properties reported by the device; versioned when read back from the hub."""


class Twin:
    """Full twin document returned by a twin ``get``."""

    def __init__(self, desired: DesiredProperties, reported: ReportedProperties) -> None:
        self.desired = desired
        self.reported = reported

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Twin":
        if not isinstance(document, Mapping):
            raise TwinDocumentError("Twin document must be a mapping")
        desired = document.get("desired")
        reported = document.get("reported")
        if not isinstance(desired, Mapping) or not isinstance(reported, Mapping):
            raise TwinDocumentError("Twin document must contain desired and reported sections")
        return cls(
            desired=DesiredProperties(desired),
            reported=ReportedProperties(reported, from_service=True),
        )

    def __repr__(self) -> str:
        return f"Twin(desired={self.desired!r}, reported={self.reported!r})"
