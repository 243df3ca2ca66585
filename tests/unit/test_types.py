"""
Tests for metaschema.types module.
"""

import pytest

from metaschema.exceptions import UnknownLogicalTypeError, ValidationError
from metaschema.types import (
    BaseType,
    LogicalType,
    PHYSICAL_TYPES,
    SAFE_CONVERSIONS,
    infer_logical_type,
    is_safe_conversion,
)


class TestLogicalType:
    """Test logical type parsing and physical mapping."""
    
    def test_every_logical_type_has_physical_mapping(self):
        assert set(PHYSICAL_TYPES) == set(LogicalType)
    
    @pytest.mark.parametrize(
        "logical, sql_type, default",
        [
            (LogicalType.CURRENCY, "NUMERIC(19,4)", None),
            (LogicalType.PERCENT, "NUMERIC(9,4)", None),
            (LogicalType.MULTI_REFERENCE, "JSONB", "'[]'::jsonb"),
            (LogicalType.RICH_TEXT, "TEXT", None),
            (LogicalType.BOOLEAN, "BOOLEAN", "false"),
            (LogicalType.URL, "VARCHAR(2048)", None),
            (LogicalType.DATETIME, "TIMESTAMPTZ", None),
            (LogicalType.REFERENCE, "UUID", None),
        ],
    )
    def test_physical_mapping(self, logical, sql_type, default):
        assert logical.physical.sql_type == sql_type
        assert logical.physical.default == default
    
    def test_parse_accepts_hyphenated_alias(self):
        assert LogicalType.parse("multi-reference") == LogicalType.MULTI_REFERENCE
        assert LogicalType.parse("Rich_Text") == LogicalType.RICH_TEXT
    
    def test_parse_returns_enum_unchanged(self):
        assert LogicalType.parse(LogicalType.EMAIL) is LogicalType.EMAIL
    
    def test_parse_unknown_type_lists_valid_types(self):
        with pytest.raises(UnknownLogicalTypeError) as exc_info:
            LogicalType.parse("hologram")
        
        error = exc_info.value
        assert isinstance(error, ValidationError)
        assert "hologram" in str(error)
        assert "currency" in error.valid_types
        assert error.valid_types == sorted(error.valid_types)
    
    def test_reference_types(self):
        assert LogicalType.REFERENCE.is_reference
        assert LogicalType.USER_REFERENCE.is_reference
        assert not LogicalType.MULTI_REFERENCE.is_reference
        assert not LogicalType.TEXT.is_reference


class TestSafeConversions:
    """Test the base-type conversion table."""
    
    def test_identical_types_always_safe(self):
        for base in BaseType:
            assert is_safe_conversion(base, base)
    
    def test_every_listed_pair_is_safe(self):
        for source, targets in SAFE_CONVERSIONS.items():
            for target in targets:
                assert is_safe_conversion(source, target)
    
    def test_unlisted_pairs_are_unsafe(self):
        for source in BaseType:
            for target in BaseType:
                if source == target or target in SAFE_CONVERSIONS.get(source, ()):
                    continue
                assert not is_safe_conversion(source, target), (source, target)
    
    @pytest.mark.parametrize(
        "source, target, expected",
        [
            (BaseType.SMALLINT, BaseType.BIGINT, True),
            (BaseType.VARCHAR, BaseType.TEXT, True),
            (BaseType.UUID, BaseType.VARCHAR, True),
            (BaseType.TEXT, BaseType.VARCHAR, False),
            (BaseType.BIGINT, BaseType.INTEGER, False),
            (BaseType.TEXT, BaseType.UUID, False),
            (BaseType.NUMERIC, BaseType.INTEGER, False),
        ],
    )
    def test_examples(self, source, target, expected):
        assert is_safe_conversion(source, target) is expected


class TestCatalogTypes:
    """Test catalog data type resolution."""
    
    @pytest.mark.parametrize(
        "data_type, base",
        [
            ("character varying", BaseType.VARCHAR),
            ("timestamp with time zone", BaseType.TIMESTAMPTZ),
            ("timestamp without time zone", BaseType.TIMESTAMP),
            ("double precision", BaseType.DOUBLE),
            ("INTEGER", BaseType.INTEGER),
        ],
    )
    def test_from_catalog(self, data_type, base):
        assert BaseType.from_catalog(data_type) == base
    
    def test_from_catalog_unknown(self):
        assert BaseType.from_catalog("tsvector") is None
    
    @pytest.mark.parametrize(
        "data_type, logical",
        [
            ("uuid", LogicalType.UUID),
            ("character varying", LogicalType.TEXT),
            ("bigint", LogicalType.INTEGER),
            ("numeric", LogicalType.DECIMAL),
            ("boolean", LogicalType.BOOLEAN),
            ("timestamp with time zone", LogicalType.DATETIME),
            ("jsonb", LogicalType.JSON),
            ("tsvector", LogicalType.TEXT),
            ("USER-DEFINED", LogicalType.TEXT),
        ],
    )
    def test_infer_logical_type(self, data_type, logical):
        assert infer_logical_type(data_type) == logical
