"""
Schema governance for metaschema.

Decides whether a collection or property operation may proceed, based on
the ownership tier of the target, the acting identity, naming rules and
data-safety gates. Every violation is collected so callers see all reasons
at once. The engine reads metadata and the catalog but never writes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..database.introspection import CatalogIntrospector
from ..exceptions import (
    ConflictError,
    NotFoundError,
    SchemaError,
    SchemaPermissionError,
    ValidationError,
)
from ..models import ChangeContext, Collection, OwnerType, Property
from ..naming import (
    MAX_IDENTIFIER_LENGTH,
    MIN_IDENTIFIER_LENGTH,
    RESERVED_COLLECTION_CODES,
    RESERVED_PROPERTY_CODES,
    check_identifier,
)
from ..types import LogicalType, is_safe_conversion
from .store import MetadataStore


logger = logging.getLogger(__name__)


COLLECTION_PROTECTED_FIELDS = ("code", "table_name", "owner_type")
PROPERTY_PROTECTED_FIELDS = ("code", "storage_column", "owner_type")


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ViolationKind(str, Enum):
    """Category of a rejection, ordered from least to most severe."""
    
    VALIDATION = "validation"
    CONFLICT = "conflict"
    PERMISSION = "permission"


@dataclass
class Violation:
    kind: ViolationKind
    message: str


@dataclass
class ValidationResult:
    """Outcome of a governance check: allowed iff there are no violations."""
    
    violations: List[Violation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    
    @property
    def allowed(self) -> bool:
        return not self.violations
    
    @property
    def errors(self) -> List[str]:
        return [v.message for v in self.violations]
    
    def reject(self, kind: ViolationKind, message: str) -> None:
        self.violations.append(Violation(kind, message))
    
    def warn(self, message: str) -> None:
        self.warnings.append(message)
    
    def raise_for_errors(self) -> None:
        """Raise the most severe error category present, carrying every message."""
        if self.allowed:
            return
        
        kinds = {v.kind for v in self.violations}
        message = "Operation not allowed: " + "; ".join(self.errors)
        if ViolationKind.PERMISSION in kinds:
            raise SchemaPermissionError(message, errors=self.errors)
        if ViolationKind.CONFLICT in kinds:
            raise ConflictError(message, errors=self.errors)
        raise ValidationError(message, errors=self.errors)


@dataclass
class SchemaPermissions:
    """What the ownership tier of a collection allows."""
    
    owner_type: OwnerType
    can_modify_metadata: bool
    can_add_properties: bool
    can_delete: bool
    can_modify_schema: bool
    required_prefix: Optional[str] = None
    restrictions: List[str] = field(default_factory=list)


@dataclass
class NameAvailability:
    available: bool
    reason: Optional[str] = None
    suggested_code: Optional[str] = None


@dataclass
class CollectionOperation:
    """A requested change to a collection.
    
    `changes` holds the fields being set: for create the new collection's
    attributes (`table_name`, `owner_type`), for update only the fields
    that change.
    """
    
    operation: OperationType
    code: str
    context: ChangeContext = field(default_factory=ChangeContext)
    changes: Dict[str, Any] = field(default_factory=dict)
    explicit_approval: bool = False


@dataclass
class PropertyOperation:
    """A requested change to a property of a collection."""
    
    operation: OperationType
    collection_code: str
    code: str
    context: ChangeContext = field(default_factory=ChangeContext)
    changes: Dict[str, Any] = field(default_factory=dict)
    explicit_approval: bool = False


class GovernanceEngine:
    """Ownership-tier rules, naming validation and safety gates."""
    
    def __init__(
        self,
        store: MetadataStore,
        introspector: CatalogIntrospector,
        schema: str = "public",
        reserved_prefix: str = "x_",
        min_identifier_length: int = MIN_IDENTIFIER_LENGTH,
        max_identifier_length: int = MAX_IDENTIFIER_LENGTH,
        extra_reserved_collection_codes: Optional[List[str]] = None,
        extra_reserved_property_codes: Optional[List[str]] = None,
        null_check_timeout_ms: Optional[int] = None,
    ):
        self.store = store
        self.introspector = introspector
        self.schema = schema
        self.reserved_prefix = reserved_prefix
        self.min_identifier_length = min_identifier_length
        self.max_identifier_length = max_identifier_length
        self.null_check_timeout_ms = null_check_timeout_ms
        self.reserved_collection_codes: Set[str] = set(RESERVED_COLLECTION_CODES) | set(
            extra_reserved_collection_codes or []
        )
        self.reserved_property_codes: Set[str] = set(RESERVED_PROPERTY_CODES) | set(
            extra_reserved_property_codes or []
        )
    
    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------
    
    def permissions_for(self, owner_type: OwnerType) -> SchemaPermissions:
        """Default permissions of an ownership tier."""
        if owner_type == OwnerType.SYSTEM:
            return SchemaPermissions(
                owner_type=owner_type,
                can_modify_metadata=False,
                can_add_properties=False,
                can_delete=False,
                can_modify_schema=False,
                restrictions=[
                    "System collections are managed by the platform",
                    "Properties cannot be added, changed or removed",
                    "The collection cannot be deleted",
                ],
            )
        if owner_type == OwnerType.MODULE:
            return SchemaPermissions(
                owner_type=owner_type,
                can_modify_metadata=True,
                can_add_properties=True,
                can_delete=False,
                can_modify_schema=False,
                required_prefix=self.reserved_prefix,
                restrictions=[
                    f"Custom properties must use the '{self.reserved_prefix}' prefix",
                    "Platform properties cannot be deleted or have their types changed",
                    "Deletion requires explicit approval",
                ],
            )
        return SchemaPermissions(
            owner_type=owner_type,
            can_modify_metadata=True,
            can_add_properties=True,
            can_delete=True,
            can_modify_schema=True,
        )
    
    async def get_collection_permissions(self, code: str) -> SchemaPermissions:
        collection = await self.store.get_collection(code)
        if collection is None:
            raise NotFoundError(f"Collection '{code}' not found")
        return self.permissions_for(collection.owner_type)
    
    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    
    def _check_name(self, value: Optional[str], kind: str, reserved: Set[str]) -> List[str]:
        return check_identifier(
            value,
            kind,
            reserved=reserved,
            min_length=self.min_identifier_length,
            max_length=self.max_identifier_length,
        )
    
    def validate_collection_code(self, code: str) -> ValidationResult:
        """Naming rules for a collection code."""
        result = ValidationResult()
        for message in self._check_name(code, "Collection code", self.reserved_collection_codes):
            result.reject(ViolationKind.VALIDATION, message)
        return result
    
    def validate_property_code(
        self,
        code: str,
        collection_owner: Optional[OwnerType] = None,
        property_owner: OwnerType = OwnerType.CUSTOM,
    ) -> ValidationResult:
        """Naming rules for a property code, including the module prefix rule."""
        result = ValidationResult()
        for message in self._check_name(code, "Property code", self.reserved_property_codes):
            result.reject(ViolationKind.VALIDATION, message)
        
        if (
            collection_owner == OwnerType.MODULE
            and property_owner == OwnerType.CUSTOM
            and code
            and not code.startswith(self.reserved_prefix)
        ):
            result.reject(
                ViolationKind.VALIDATION,
                f"Custom properties on platform collections must start with "
                f"'{self.reserved_prefix}' (e.g. '{self.reserved_prefix}{code}')",
            )
        return result
    
    async def is_collection_name_available(self, code: str) -> NameAvailability:
        naming = self.validate_collection_code(code)
        if not naming.allowed:
            return NameAvailability(False, reason=naming.errors[0])
        if await self.store.get_collection(code) is not None:
            return NameAvailability(False, reason=f"Collection code '{code}' is already in use")
        return NameAvailability(True)
    
    async def is_property_name_available(
        self, collection_code: str, code: str
    ) -> NameAvailability:
        collection = await self.store.get_collection_with_properties(collection_code)
        if collection is None:
            return NameAvailability(False, reason=f"Collection '{collection_code}' not found")
        
        naming = self.validate_property_code(code, collection.owner_type)
        if not naming.allowed:
            suggestion = None
            if collection.owner_type == OwnerType.MODULE and not code.startswith(
                self.reserved_prefix
            ):
                suggestion = f"{self.reserved_prefix}{code}"
            return NameAvailability(False, reason=naming.errors[0], suggested_code=suggestion)
        
        if any(p.code == code for p in collection.properties):
            return NameAvailability(
                False, reason=f"Property code '{code}' is already in use in '{collection_code}'"
            )
        return NameAvailability(True)
    
    # ------------------------------------------------------------------
    # Collection operations
    # ------------------------------------------------------------------
    
    async def validate_collection_operation(self, op: CollectionOperation) -> ValidationResult:
        """Evaluate every rule that applies to a collection operation."""
        if op.operation == OperationType.CREATE:
            return await self._validate_collection_create(op)
        
        result = ValidationResult()
        collection = await self.store.get_collection(op.code)
        if collection is None:
            result.reject(ViolationKind.VALIDATION, f"Collection '{op.code}' not found")
            return result
        
        if op.operation == OperationType.UPDATE:
            await self._validate_collection_update(op, collection, result)
        else:
            self._check_delete(
                result, f"collection '{collection.code}'", collection.owner_type, op.explicit_approval
            )
        
        self._log_outcome(f"collection {op.operation.value} '{op.code}'", result)
        return result
    
    async def _validate_collection_create(self, op: CollectionOperation) -> ValidationResult:
        result = self.validate_collection_code(op.code)
        table_name = op.changes.get("table_name") or op.code
        if table_name != op.code:
            for message in self._check_name(table_name, "Table name", self.reserved_collection_codes):
                result.reject(ViolationKind.VALIDATION, message)
        if not result.allowed:
            return result
        
        if await self.store.get_collection(op.code) is not None:
            result.reject(ViolationKind.CONFLICT, f"Collection code '{op.code}' already exists")
        if await self.store.get_collection_by_table(table_name) is not None:
            result.reject(
                ViolationKind.CONFLICT, f"Table '{table_name}' is already backed by a collection"
            )
        elif await self.introspector.table_exists(self.schema, table_name):
            result.reject(
                ViolationKind.CONFLICT,
                f"Table '{table_name}' already exists; register it with table discovery instead",
            )
        
        self._log_outcome(f"collection create '{op.code}'", result)
        return result
    
    async def _validate_collection_update(
        self, op: CollectionOperation, collection: Collection, result: ValidationResult
    ) -> None:
        if collection.owner_type == OwnerType.SYSTEM:
            result.reject(
                ViolationKind.PERMISSION,
                f"System collection '{collection.code}' cannot be modified",
            )
        
        self._check_protected_fields(
            result, "collection", COLLECTION_PROTECTED_FIELDS, op.changes, op.context
        )
        if not op.context.is_migration:
            return
        
        # Renames are only reachable for migrations
        new_code = op.changes.get("code")
        if new_code and new_code != collection.code:
            for message in self.validate_collection_code(new_code).errors:
                result.reject(ViolationKind.VALIDATION, message)
            if await self.store.get_collection(new_code) is not None:
                result.reject(ViolationKind.CONFLICT, f"Collection code '{new_code}' already exists")
        
        new_table = op.changes.get("table_name")
        if new_table and new_table != collection.table_name:
            for message in self._check_name(new_table, "Table name", self.reserved_collection_codes):
                result.reject(ViolationKind.VALIDATION, message)
            if await self.introspector.table_exists(self.schema, new_table):
                result.reject(ViolationKind.CONFLICT, f"Table '{new_table}' already exists")
    
    # ------------------------------------------------------------------
    # Property operations
    # ------------------------------------------------------------------
    
    async def validate_property_operation(self, op: PropertyOperation) -> ValidationResult:
        """Evaluate every rule that applies to a property operation."""
        result = ValidationResult()
        collection = await self.store.get_collection_with_properties(op.collection_code)
        if collection is None:
            result.reject(ViolationKind.VALIDATION, f"Collection '{op.collection_code}' not found")
            return result
        
        label = f"property {op.operation.value} '{op.collection_code}.{op.code}'"
        if op.operation == OperationType.CREATE:
            self._validate_property_create(op, collection, result)
            self._log_outcome(label, result)
            return result
        
        prop = next((p for p in collection.properties if p.code == op.code), None)
        if prop is None:
            result.reject(
                ViolationKind.VALIDATION,
                f"Property '{op.code}' not found in collection '{op.collection_code}'",
            )
            return result
        
        if op.operation == OperationType.UPDATE:
            await self._validate_property_update(op, collection, prop, result)
        else:
            self._check_delete(
                result, f"property '{prop.code}'", prop.owner_type, op.explicit_approval
            )
        
        self._log_outcome(label, result)
        return result
    
    def _validate_property_create(
        self, op: PropertyOperation, collection: Collection, result: ValidationResult
    ) -> None:
        property_owner = OwnerType.CUSTOM
        claimed_owner = op.changes.get("owner_type", OwnerType.CUSTOM)
        try:
            claimed_owner = OwnerType(claimed_owner)
        except ValueError:
            result.reject(ViolationKind.VALIDATION, f"Unknown owner type '{claimed_owner}'")
        else:
            if op.context.is_migration:
                property_owner = claimed_owner
            elif claimed_owner != OwnerType.CUSTOM:
                result.reject(
                    ViolationKind.PERMISSION,
                    f"Only migrations can create {claimed_owner.value} properties",
                )
        
        naming = self.validate_property_code(op.code, collection.owner_type, property_owner)
        result.violations.extend(naming.violations)
        
        storage_column = op.changes.get("storage_column") or op.code
        if storage_column != op.code:
            for message in self._check_name(
                storage_column, "Storage column", self.reserved_property_codes
            ):
                result.reject(ViolationKind.VALIDATION, message)
        
        if "property_type_id" in op.changes:
            self._check_logical_type(op.changes["property_type_id"], result)
        
        if not op.context.is_migration:
            if collection.owner_type == OwnerType.SYSTEM:
                result.reject(
                    ViolationKind.PERMISSION,
                    f"Properties cannot be added to system collection '{collection.code}'",
                )
            elif not collection.is_extensible:
                result.reject(
                    ViolationKind.PERMISSION,
                    f"Collection '{collection.code}' is not extensible",
                )
        
        if any(p.code == op.code for p in collection.properties):
            result.reject(
                ViolationKind.CONFLICT,
                f"Property '{op.code}' already exists in collection '{collection.code}'",
            )
        if any(p.storage_column == storage_column for p in collection.properties):
            result.reject(
                ViolationKind.CONFLICT,
                f"Column '{storage_column}' is already used in collection '{collection.code}'",
            )
    
    async def _validate_property_update(
        self,
        op: PropertyOperation,
        collection: Collection,
        prop: Property,
        result: ValidationResult,
    ) -> None:
        if prop.owner_type == OwnerType.SYSTEM:
            result.reject(
                ViolationKind.PERMISSION, f"System property '{prop.code}' cannot be modified"
            )
        
        self._check_protected_fields(
            result, "property", PROPERTY_PROTECTED_FIELDS, op.changes, op.context
        )
        
        if op.context.is_migration:
            new_code = op.changes.get("code")
            if new_code and new_code != prop.code:
                naming = self.validate_property_code(new_code, collection.owner_type, prop.owner_type)
                result.violations.extend(naming.violations)
                if any(p.code == new_code for p in collection.properties):
                    result.reject(
                        ViolationKind.CONFLICT,
                        f"Property '{new_code}' already exists in collection '{collection.code}'",
                    )
        
        new_type = op.changes.get("property_type_id")
        if new_type is not None and new_type != prop.property_type_id:
            self._check_type_change(op, prop, new_type, result)
        
        if op.changes.get("is_required") is True and not prop.is_required:
            await self._check_not_null(op, collection, prop, result)
    
    def _check_logical_type(self, value: Any, result: ValidationResult) -> Optional[LogicalType]:
        try:
            return LogicalType.parse(value)
        except ValidationError as e:
            result.reject(ViolationKind.VALIDATION, e.message)
            return None
    
    def _check_type_change(
        self, op: PropertyOperation, prop: Property, new_type: Any, result: ValidationResult
    ) -> None:
        target = self._check_logical_type(new_type, result)
        source = self._check_logical_type(prop.property_type_id, result)
        if target is None or source is None:
            return
        if source.base_type == target.base_type:
            return
        
        if prop.owner_type == OwnerType.MODULE and not op.context.is_migration:
            result.reject(
                ViolationKind.PERMISSION,
                f"Platform property '{prop.code}' cannot have its type changed",
            )
        if not is_safe_conversion(source.base_type, target.base_type):
            result.reject(
                ViolationKind.PERMISSION,
                f"Unsafe type conversion for '{prop.code}' from {source.base_type.value} "
                f"to {target.base_type.value}: existing data may be truncated, lose "
                f"precision or fail to convert",
            )
        else:
            result.warn(
                f"Column '{prop.storage_column}' will be converted from "
                f"{source.base_type.value} to {target.base_type.value}"
            )
    
    async def _check_not_null(
        self,
        op: PropertyOperation,
        collection: Collection,
        prop: Property,
        result: ValidationResult,
    ) -> None:
        default_value = op.changes.get("default_value", prop.default_value)
        if default_value is not None:
            result.warn(
                f"Existing NULL values in '{prop.storage_column}' will be set to "
                f"the default value {default_value!r}"
            )
            return
        
        try:
            has_nulls = await self.introspector.column_has_nulls(
                self.schema,
                collection.table_name,
                prop.storage_column,
                timeout_ms=self.null_check_timeout_ms,
            )
        except SchemaError as e:
            result.reject(
                ViolationKind.PERMISSION,
                f"Could not verify that '{prop.storage_column}' has no NULL values: {e.message}",
            )
            return
        
        if has_nulls:
            result.reject(
                ViolationKind.PERMISSION,
                f"Cannot make '{prop.code}' required: column '{prop.storage_column}' "
                f"contains NULL values and no default value was provided",
            )
    
    # ------------------------------------------------------------------
    # Shared gates
    # ------------------------------------------------------------------
    
    def _check_protected_fields(
        self,
        result: ValidationResult,
        entity: str,
        protected: tuple,
        changes: Dict[str, Any],
        context: ChangeContext,
    ) -> None:
        if context.is_migration:
            return
        for field_name in protected:
            if field_name in changes:
                result.reject(
                    ViolationKind.PERMISSION,
                    f"Field '{field_name}' of a {entity} can only be changed by a migration",
                )
    
    def _check_delete(
        self,
        result: ValidationResult,
        label: str,
        owner_type: OwnerType,
        explicit_approval: bool,
    ) -> None:
        if owner_type == OwnerType.SYSTEM:
            result.reject(ViolationKind.PERMISSION, f"System {label} cannot be deleted")
        elif owner_type == OwnerType.MODULE:
            if explicit_approval:
                result.warn(f"Deleting platform {label} with explicit approval")
            else:
                result.reject(
                    ViolationKind.PERMISSION,
                    f"Deleting platform {label} requires explicit approval",
                )
        else:
            result.warn(
                f"Deleting {label} will remove its data from active use; it can be "
                f"recovered until the soft-deleted table or column is purged"
            )
    
    def _log_outcome(self, label: str, result: ValidationResult) -> None:
        if result.allowed:
            logger.debug(f"Allowed {label} ({len(result.warnings)} warnings)")
        else:
            logger.info(f"Rejected {label}: {'; '.join(result.errors)}")
    
    # ------------------------------------------------------------------
    # Raising variants
    # ------------------------------------------------------------------
    
    async def ensure_collection_operation_allowed(self, op: CollectionOperation) -> ValidationResult:
        """Validate and raise on rejection; returns the result for its warnings."""
        result = await self.validate_collection_operation(op)
        result.raise_for_errors()
        return result
    
    async def ensure_property_operation_allowed(self, op: PropertyOperation) -> ValidationResult:
        """Validate and raise on rejection; returns the result for its warnings."""
        result = await self.validate_property_operation(op)
        result.raise_for_errors()
        return result
