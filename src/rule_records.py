"""
Persisted rule records.

Each rule variant has an explicitly typed record that is stored in the model
attribute dictionary as a JSON-ready dict tagged with ``kind`` and
``version``. The older order-significant list layout is still accepted on
load and can be produced for export.
"""
import dataclasses
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Sequence, Union

from errors import PersistedStateInconsistency

RECORD_VERSION = 1

# Legacy type tags, first element of the list layout
LEGACY_REPLACE = "RuleReplace"
LEGACY_REPLACE_ONE_SHAPE = "RuleReplaceOneShape"
LEGACY_MERGE = "RuleMerge"
LEGACY_STRETCH = "RuleStretch"


@dataclass
class ReplaceRecord:
    """Replace matched source shapes by a transformed copy of new shapes."""
    origin_uid: str
    shape_uids: List[str]
    origin_new_uid: str
    shape_new_uids: List[str]
    mirror_x: bool = False
    mirror_y: bool = False
    disable_overlap: bool = False

    kind: ClassVar[str] = "replace"

    def referenced_uids(self) -> List[str]:
        return [self.origin_uid, *self.shape_uids, self.origin_new_uid, *self.shape_new_uids]

    def to_legacy(self) -> List[Any]:
        return [
            LEGACY_REPLACE, self.origin_uid, list(self.shape_uids),
            self.origin_new_uid, list(self.shape_new_uids),
            self.mirror_x, self.mirror_y, self.disable_overlap,
        ]


@dataclass
class MergeRecord:
    """Fuse adjacent shapes along one axis into their convex hull."""
    merge_x: bool
    merge_y: bool
    num_objects: int
    definition_names: List[str] = field(default_factory=list)
    max_distance: float = 1.0

    kind: ClassVar[str] = "merge"

    def referenced_uids(self) -> List[str]:
        return []

    def to_legacy(self) -> List[Any]:
        return [
            LEGACY_MERGE, self.merge_x, self.merge_y,
            self.num_objects, list(self.definition_names),
        ]


@dataclass
class StretchRecord:
    """Scale a shape along one or both axes within a factor range."""
    stretch_x: bool
    stretch_y: bool
    min_factor: float
    max_factor: float
    definition_names: List[str] = field(default_factory=list)
    constrain_connecting: bool = False

    kind: ClassVar[str] = "stretch"

    def referenced_uids(self) -> List[str]:
        return []

    def to_legacy(self) -> List[Any]:
        return [
            LEGACY_STRETCH, self.stretch_x, self.stretch_y,
            self.min_factor, self.max_factor,
            list(self.definition_names), self.constrain_connecting,
        ]


RuleRecord = Union[ReplaceRecord, MergeRecord, StretchRecord]

_RECORD_TYPES = {cls.kind: cls for cls in (ReplaceRecord, MergeRecord, StretchRecord)}


def record_to_dict(record: RuleRecord) -> Dict[str, Any]:
    data = {"kind": record.kind, "version": RECORD_VERSION}
    data.update(asdict(record))
    return data


def record_from_dict(data: Dict[str, Any]) -> RuleRecord:
    """Decode a stored record dict by its ``kind``."""
    if not isinstance(data, dict):
        raise PersistedStateInconsistency(f"Rule record must be a dict, got {type(data).__name__}")
    kind = data.get("kind")
    cls = _RECORD_TYPES.get(kind)
    if cls is None:
        raise PersistedStateInconsistency(f"Unknown rule record kind: {kind!r}")
    try:
        version = int(data.get("version", RECORD_VERSION))
    except (TypeError, ValueError) as exc:
        raise PersistedStateInconsistency(f"Bad {kind} record version: {exc}") from exc
    if version > RECORD_VERSION:
        raise PersistedStateInconsistency(
            f"Rule record version {version} is newer than supported {RECORD_VERSION}"
        )
    fields = {k: v for k, v in data.items() if k not in ("kind", "version")}
    try:
        record = cls(**fields)
        for f in dataclasses.fields(record):
            setattr(record, f.name, _coerce(f.type, getattr(record, f.name)))
    except (TypeError, ValueError) as exc:
        raise PersistedStateInconsistency(f"Malformed {kind} record: {exc}") from exc
    return record


def _coerce(annotation, value):
    # Only real booleans or 0/1 count; any non-empty string is truthy
    if annotation is bool:
        if isinstance(value, bool):
            return value
        if value in (0, 1):
            return bool(value)
        raise TypeError(f"expected a boolean, got {value!r}")
    if annotation is int:
        if isinstance(value, (bool, float)):
            raise TypeError(f"expected an integer, got {value!r}")
        return int(value)
    if annotation is float:
        if isinstance(value, bool):
            raise TypeError(f"expected a number, got {value!r}")
        return float(value)
    if annotation is str:
        if not isinstance(value, str):
            raise TypeError(f"expected a string, got {value!r}")
        return value
    # List[str]
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise TypeError(f"expected a list of strings, got {value!r}")
    return list(value)


def _as_list(value) -> List[str]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def record_from_legacy(values: Sequence[Any]) -> RuleRecord:
    """Decode the order-significant list layout."""
    if not values:
        raise PersistedStateInconsistency("Empty legacy rule record")
    tag, rest = values[0], list(values[1:])
    try:
        if tag in (LEGACY_REPLACE, LEGACY_REPLACE_ONE_SHAPE):
            origin_uid, shape_uids, origin_new_uid, shape_new_uids = rest[:4]
            mirror_x, mirror_y = rest[4:6]
            disable_overlap = rest[6] if len(rest) > 6 else False
            return ReplaceRecord(
                origin_uid=origin_uid,
                shape_uids=_as_list(shape_uids),
                origin_new_uid=origin_new_uid,
                shape_new_uids=_as_list(shape_new_uids),
                mirror_x=bool(mirror_x),
                mirror_y=bool(mirror_y),
                disable_overlap=bool(disable_overlap),
            )
        if tag == LEGACY_MERGE:
            merge_x, merge_y, num_objects, names = rest[:4]
            return MergeRecord(
                merge_x=bool(merge_x),
                merge_y=bool(merge_y),
                num_objects=int(num_objects),
                definition_names=_as_list(names),
            )
        if tag == LEGACY_STRETCH:
            stretch_x, stretch_y, min_factor, max_factor, names = rest[:5]
            constrain = rest[5] if len(rest) > 5 else False
            return StretchRecord(
                stretch_x=bool(stretch_x),
                stretch_y=bool(stretch_y),
                min_factor=float(min_factor),
                max_factor=float(max_factor),
                definition_names=_as_list(names),
                constrain_connecting=bool(constrain),
            )
    except (TypeError, ValueError) as exc:
        raise PersistedStateInconsistency(f"Malformed legacy {tag} record: {exc}") from exc
    raise PersistedStateInconsistency(f"Unknown legacy rule type: {tag!r}")


def decode_record(data: Union[Dict[str, Any], Sequence[Any]]) -> RuleRecord:
    """Decode either a typed dict record or a legacy list record."""
    if isinstance(data, dict):
        return record_from_dict(data)
    return record_from_legacy(data)
