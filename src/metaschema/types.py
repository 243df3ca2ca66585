"""
Logical and physical column types.

Maps application-level logical types onto concrete PostgreSQL column types,
defines which physical base type changes are considered safe, and infers a
logical type back from a catalog data type for table discovery.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from .exceptions import UnknownLogicalTypeError


class BaseType(str, Enum):
    """Physical base types, independent of length or precision modifiers."""
    
    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    NUMERIC = "numeric"
    REAL = "real"
    DOUBLE = "double precision"
    VARCHAR = "varchar"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    TIME = "time"
    INTERVAL = "interval"
    UUID = "uuid"
    JSON = "json"
    JSONB = "jsonb"
    
    @classmethod
    def from_catalog(cls, data_type: str) -> Optional["BaseType"]:
        """Resolve an information_schema data_type (or alias) to a base type."""
        return _CATALOG_ALIASES.get(data_type.strip().lower())


_CATALOG_ALIASES: Dict[str, BaseType] = {
    "smallint": BaseType.SMALLINT,
    "int2": BaseType.SMALLINT,
    "integer": BaseType.INTEGER,
    "int": BaseType.INTEGER,
    "int4": BaseType.INTEGER,
    "bigint": BaseType.BIGINT,
    "int8": BaseType.BIGINT,
    "numeric": BaseType.NUMERIC,
    "decimal": BaseType.NUMERIC,
    "real": BaseType.REAL,
    "float4": BaseType.REAL,
    "double precision": BaseType.DOUBLE,
    "float8": BaseType.DOUBLE,
    "character varying": BaseType.VARCHAR,
    "varchar": BaseType.VARCHAR,
    "text": BaseType.TEXT,
    "boolean": BaseType.BOOLEAN,
    "bool": BaseType.BOOLEAN,
    "date": BaseType.DATE,
    "timestamp without time zone": BaseType.TIMESTAMP,
    "timestamp": BaseType.TIMESTAMP,
    "timestamp with time zone": BaseType.TIMESTAMPTZ,
    "timestamptz": BaseType.TIMESTAMPTZ,
    "time without time zone": BaseType.TIME,
    "time": BaseType.TIME,
    "interval": BaseType.INTERVAL,
    "uuid": BaseType.UUID,
    "json": BaseType.JSON,
    "jsonb": BaseType.JSONB,
}


class LogicalType(str, Enum):
    """Application-level property types."""
    
    TEXT = "text"
    LONG_TEXT = "long_text"
    RICH_TEXT = "rich_text"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    IP_ADDRESS = "ip_address"
    MAC_ADDRESS = "mac_address"
    COLOR = "color"
    DOMAIN_SCOPE = "domain_scope"
    NUMBER = "number"
    AUTO_NUMBER = "auto_number"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    INTEGER = "integer"
    DECIMAL = "decimal"
    CURRENCY = "currency"
    PERCENT = "percent"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    TIME = "time"
    DURATION = "duration"
    REFERENCE = "reference"
    USER = "user"
    GROUP = "group"
    HIERARCHICAL = "hierarchical"
    USER_REFERENCE = "user_reference"
    GROUP_REFERENCE = "group_reference"
    LOCATION_REFERENCE = "location_reference"
    MULTI_REFERENCE = "multi_reference"
    MULTI_USER = "multi_user"
    MULTI_CHOICE = "multi_choice"
    TAGS = "tags"
    ATTACHMENT = "attachment"
    FILE = "file"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    JSON = "json"
    KEY_VALUE = "key_value"
    CONDITION = "condition"
    GEOLOCATION = "geolocation"
    GEO_POINT = "geo_point"
    CHOICE = "choice"
    FORMULA = "formula"
    ROLLUP = "rollup"
    LOOKUP = "lookup"
    PROCESS_FLOW_STAGE = "process_flow_stage"
    SCRIPT_REF = "script_ref"
    PASSWORD_HASHED = "password_hashed"
    SECRET_ENCRYPTED = "secret_encrypted"
    TRANSLATED_TEXT = "translated_text"
    TRANSLATED_RICH_TEXT = "translated_rich_text"
    UUID = "uuid"
    GUID = "guid"
    
    @classmethod
    def parse(cls, value: Union[str, "LogicalType"]) -> "LogicalType":
        """Resolve a logical type, accepting hyphenated aliases."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise UnknownLogicalTypeError(str(value), sorted(t.value for t in cls))
    
    @property
    def physical(self) -> "PhysicalType":
        return PHYSICAL_TYPES[self]
    
    @property
    def base_type(self) -> BaseType:
        return PHYSICAL_TYPES[self].base_type
    
    @property
    def is_reference(self) -> bool:
        """Single-valued reference types are stored as a UUID foreign key."""
        return self in REFERENCE_TYPES


@dataclass(frozen=True)
class PhysicalType:
    """Concrete column type and optional default constraint."""
    
    sql_type: str
    base_type: BaseType
    default: Optional[str] = None


_VARCHAR_255 = PhysicalType("VARCHAR(255)", BaseType.VARCHAR)
_TEXT = PhysicalType("TEXT", BaseType.TEXT)
_NUMERIC = PhysicalType("NUMERIC", BaseType.NUMERIC)
_UUID = PhysicalType("UUID", BaseType.UUID)
_JSONB = PhysicalType("JSONB", BaseType.JSONB)
_JSONB_LIST = PhysicalType("JSONB", BaseType.JSONB, "'[]'::jsonb")
_SHORT_VARCHAR = PhysicalType("VARCHAR(64)", BaseType.VARCHAR)

PHYSICAL_TYPES: Dict[LogicalType, PhysicalType] = {
    LogicalType.TEXT: _VARCHAR_255,
    LogicalType.LONG_TEXT: _TEXT,
    LogicalType.RICH_TEXT: _TEXT,
    LogicalType.EMAIL: _VARCHAR_255,
    LogicalType.PHONE: PhysicalType("VARCHAR(50)", BaseType.VARCHAR),
    LogicalType.URL: PhysicalType("VARCHAR(2048)", BaseType.VARCHAR),
    LogicalType.IP_ADDRESS: _SHORT_VARCHAR,
    LogicalType.MAC_ADDRESS: _SHORT_VARCHAR,
    LogicalType.COLOR: _SHORT_VARCHAR,
    LogicalType.DOMAIN_SCOPE: _VARCHAR_255,
    LogicalType.NUMBER: _NUMERIC,
    LogicalType.AUTO_NUMBER: _NUMERIC,
    LogicalType.LONG: _NUMERIC,
    LogicalType.FLOAT: _NUMERIC,
    LogicalType.DOUBLE: _NUMERIC,
    LogicalType.INTEGER: PhysicalType("INTEGER", BaseType.INTEGER),
    LogicalType.DECIMAL: PhysicalType("NUMERIC(19,4)", BaseType.NUMERIC),
    LogicalType.CURRENCY: PhysicalType("NUMERIC(19,4)", BaseType.NUMERIC),
    LogicalType.PERCENT: PhysicalType("NUMERIC(9,4)", BaseType.NUMERIC),
    LogicalType.BOOLEAN: PhysicalType("BOOLEAN", BaseType.BOOLEAN, "false"),
    LogicalType.DATE: PhysicalType("DATE", BaseType.DATE),
    LogicalType.DATETIME: PhysicalType("TIMESTAMPTZ", BaseType.TIMESTAMPTZ),
    LogicalType.TIME: PhysicalType("TIME", BaseType.TIME),
    LogicalType.DURATION: PhysicalType("INTERVAL", BaseType.INTERVAL),
    LogicalType.REFERENCE: _UUID,
    LogicalType.USER: _UUID,
    LogicalType.GROUP: _UUID,
    LogicalType.HIERARCHICAL: _UUID,
    LogicalType.USER_REFERENCE: _UUID,
    LogicalType.GROUP_REFERENCE: _UUID,
    LogicalType.LOCATION_REFERENCE: _UUID,
    LogicalType.MULTI_REFERENCE: _JSONB_LIST,
    LogicalType.MULTI_USER: _JSONB_LIST,
    LogicalType.MULTI_CHOICE: _JSONB_LIST,
    LogicalType.TAGS: _JSONB_LIST,
    LogicalType.ATTACHMENT: _JSONB_LIST,
    LogicalType.FILE: _JSONB_LIST,
    LogicalType.IMAGE: _JSONB_LIST,
    LogicalType.AUDIO: _JSONB_LIST,
    LogicalType.VIDEO: _JSONB_LIST,
    LogicalType.JSON: _JSONB,
    LogicalType.KEY_VALUE: _JSONB,
    LogicalType.CONDITION: _JSONB,
    LogicalType.GEOLOCATION: _JSONB,
    LogicalType.GEO_POINT: _JSONB,
    LogicalType.CHOICE: PhysicalType("VARCHAR(100)", BaseType.VARCHAR),
    LogicalType.FORMULA: _TEXT,
    LogicalType.ROLLUP: _TEXT,
    LogicalType.LOOKUP: _TEXT,
    LogicalType.PROCESS_FLOW_STAGE: _TEXT,
    LogicalType.SCRIPT_REF: _TEXT,
    LogicalType.PASSWORD_HASHED: _TEXT,
    LogicalType.SECRET_ENCRYPTED: _TEXT,
    LogicalType.TRANSLATED_TEXT: _TEXT,
    LogicalType.TRANSLATED_RICH_TEXT: _TEXT,
    LogicalType.UUID: _UUID,
    LogicalType.GUID: _UUID,
}

_unmapped = [t.value for t in LogicalType if t not in PHYSICAL_TYPES]
if _unmapped:
    raise RuntimeError(f"Logical types without a physical mapping: {_unmapped}")

REFERENCE_TYPES: FrozenSet[LogicalType] = frozenset({
    LogicalType.REFERENCE,
    LogicalType.USER,
    LogicalType.GROUP,
    LogicalType.HIERARCHICAL,
    LogicalType.USER_REFERENCE,
    LogicalType.GROUP_REFERENCE,
    LogicalType.LOCATION_REFERENCE,
})


_TEXTUAL = frozenset({BaseType.TEXT, BaseType.VARCHAR})

# Conversions PostgreSQL performs without truncation, precision loss or
# parse failure. Identical base types are always allowed and not listed.
SAFE_CONVERSIONS: Dict[BaseType, FrozenSet[BaseType]] = {
    BaseType.SMALLINT: frozenset({
        BaseType.INTEGER, BaseType.BIGINT, BaseType.NUMERIC,
        BaseType.REAL, BaseType.DOUBLE,
    }) | _TEXTUAL,
    BaseType.INTEGER: frozenset({
        BaseType.BIGINT, BaseType.NUMERIC, BaseType.DOUBLE,
    }) | _TEXTUAL,
    BaseType.BIGINT: frozenset({BaseType.NUMERIC}) | _TEXTUAL,
    BaseType.NUMERIC: _TEXTUAL,
    BaseType.REAL: frozenset({BaseType.DOUBLE, BaseType.NUMERIC}) | _TEXTUAL,
    BaseType.DOUBLE: frozenset({BaseType.NUMERIC}) | _TEXTUAL,
    BaseType.VARCHAR: _TEXTUAL,
    BaseType.TEXT: frozenset(),
    BaseType.BOOLEAN: _TEXTUAL,
    BaseType.DATE: frozenset({BaseType.TIMESTAMP, BaseType.TIMESTAMPTZ}) | _TEXTUAL,
    BaseType.TIMESTAMP: frozenset({BaseType.TIMESTAMPTZ}) | _TEXTUAL,
    BaseType.TIMESTAMPTZ: _TEXTUAL,
    BaseType.TIME: _TEXTUAL,
    BaseType.INTERVAL: _TEXTUAL,
    BaseType.UUID: _TEXTUAL,
    BaseType.JSON: frozenset({BaseType.JSONB, BaseType.TEXT}),
    BaseType.JSONB: frozenset({BaseType.JSON, BaseType.TEXT}),
}


def is_safe_conversion(source: BaseType, target: BaseType) -> bool:
    """Check whether changing a column from source to target is safe."""
    if source == target:
        return True
    return target in SAFE_CONVERSIONS.get(source, frozenset())


# Catalog base type -> logical type used when importing existing tables.
DISCOVERY_TYPES: Dict[BaseType, LogicalType] = {
    BaseType.UUID: LogicalType.UUID,
    BaseType.VARCHAR: LogicalType.TEXT,
    BaseType.TEXT: LogicalType.TEXT,
    BaseType.SMALLINT: LogicalType.INTEGER,
    BaseType.INTEGER: LogicalType.INTEGER,
    BaseType.BIGINT: LogicalType.INTEGER,
    BaseType.NUMERIC: LogicalType.DECIMAL,
    BaseType.REAL: LogicalType.DOUBLE,
    BaseType.DOUBLE: LogicalType.DOUBLE,
    BaseType.BOOLEAN: LogicalType.BOOLEAN,
    BaseType.DATE: LogicalType.DATE,
    BaseType.TIMESTAMP: LogicalType.DATETIME,
    BaseType.TIMESTAMPTZ: LogicalType.DATETIME,
    BaseType.TIME: LogicalType.TIME,
    BaseType.INTERVAL: LogicalType.DURATION,
    BaseType.JSON: LogicalType.JSON,
    BaseType.JSONB: LogicalType.JSON,
}


def infer_logical_type(data_type: str) -> LogicalType:
    """Best-effort logical type for a catalog data type; defaults to text."""
    base = BaseType.from_catalog(data_type)
    if base is None:
        return LogicalType.TEXT
    return DISCOVERY_TYPES.get(base, LogicalType.TEXT)
