"""
Pydantic schemas for permission management.

Request and response models for the resource registry, permission groups,
group entries, membership, permission checks and audit logs.
"""
import enum
import re
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.models import PermissionAction, PermissionType
from app.features.users.models import UserRole

KEY_PATTERN = re.compile(r"^[a-z0-9_]+$")
KEY_MAX_LENGTH = 50

T = TypeVar("T")


def validate_key(value: str, label: str = "Key") -> str:
    """Registry keys are lowercase alphanumeric plus underscore."""
    if not KEY_PATTERN.match(value):
        raise ValueError(f"{label} must contain only lowercase letters, digits and underscores")
    return value


class ListResponse(BaseModel, Generic[T]):
    """Offset-paginated list."""
    items: List[T]
    total: int
    skip: int
    limit: int


# ============================================================================
# Registry Schemas
# ============================================================================

class ModuleBase(BaseModel):
    module_key: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH, description="Module key (e.g., 'support')")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    allowed_roles: List[UserRole] = Field(default_factory=list, description="Static roles that see the module without a group grant")


class ModuleCreate(ModuleBase):
    """Schema for registering a module."""

    @field_validator("module_key")
    @classmethod
    def module_key_format(cls, v: str) -> str:
        return validate_key(v, "Module key")


class ModuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    allowed_roles: Optional[List[UserRole]] = None


class ModuleResponse(ModuleBase):
    id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PageBase(BaseModel):
    module_key: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH)
    page_key: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH, description="Page key, unique within its module")
    name: str = Field(..., min_length=1, max_length=100)
    route_path: Optional[str] = Field(None, max_length=255, description="Frontend route (e.g., '/support/chat')")
    description: Optional[str] = Field(None, max_length=1000)


class PageCreate(PageBase):
    """Schema for registering a page under an existing module."""

    @field_validator("module_key")
    @classmethod
    def module_key_format(cls, v: str) -> str:
        return validate_key(v, "Module key")

    @field_validator("page_key")
    @classmethod
    def page_key_format(cls, v: str) -> str:
        return validate_key(v, "Page key")


class PageUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    route_path: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)


class PageResponse(PageBase):
    id: str
    full_key: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ComponentBase(BaseModel):
    page_key: str = Field(..., min_length=3, max_length=2 * KEY_MAX_LENGTH + 1, description="Owning page as 'module.page'")
    component_key: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH)
    name: str = Field(..., min_length=1, max_length=100)
    component_type: Optional[str] = Field(None, max_length=50, description="UI element kind (e.g., 'BUTTON', 'FORM')")
    description: Optional[str] = Field(None, max_length=1000)


class ComponentCreate(ComponentBase):
    """
    Schema for registering a component.

    The ``page_key`` shape is checked by the registry service so that bulk
    and import callers get the same typed error.
    """

    @field_validator("component_key")
    @classmethod
    def component_key_format(cls, v: str) -> str:
        return validate_key(v, "Component key")


class ComponentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    component_type: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class ComponentResponse(ComponentBase):
    id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Registry Maintenance Schemas
# ============================================================================

class IssueSeverity(str, enum.Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"


class RegistryIssue(BaseModel):
    issue_type: str = Field(..., description="ORPHANED_PAGE, ORPHANED_COMPONENT, INVALID_PAGE_KEY_FORMAT or DUPLICATE_ROUTE")
    severity: IssueSeverity
    resource_key: str
    message: str


class RegistryValidationResult(BaseModel):
    is_valid: bool
    issues: List[RegistryIssue]
    error_count: int
    warning_count: int
    validated_at: datetime


class HealthStatus(str, enum.Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


class RegistryHealthReport(BaseModel):
    status: HealthStatus
    total_modules: int
    total_pages: int
    total_components: int
    orphaned_pages: List[str]
    orphaned_components: List[str]
    duplicate_routes: List[str]
    message: str
    checked_at: datetime


class RemovedResource(BaseModel):
    resource_type: PermissionType
    resource_key: str
    reason: str


class CleanupResult(BaseModel):
    removed: List[RemovedResource]
    removed_pages: int
    removed_components: int
    message: str


# ============================================================================
# Bulk Operation Schemas
# ============================================================================

BULK_MAX_ITEMS = 100


class BulkFailure(BaseModel):
    index: int
    resource_identifier: str
    error: str
    error_type: str


class BulkResult(BaseModel, Generic[T]):
    total_count: int
    success_count: int
    failure_count: int
    successful_items: List[T]
    failures: List[BulkFailure]


class ModuleUpdateItem(ModuleUpdate):
    module_key: str


class PageRef(BaseModel):
    module_key: str
    page_key: str


class PageUpdateItem(PageUpdate, PageRef):
    pass


class ComponentRef(BaseModel):
    page_key: str
    component_key: str


class ComponentUpdateItem(ComponentUpdate, ComponentRef):
    pass


class BulkModuleCreate(BaseModel):
    items: List[ModuleCreate] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkModuleUpdate(BaseModel):
    items: List[ModuleUpdateItem] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkModuleDelete(BaseModel):
    module_keys: List[str] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkPageCreate(BaseModel):
    items: List[PageCreate] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkPageUpdate(BaseModel):
    items: List[PageUpdateItem] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkPageDelete(BaseModel):
    pages: List[PageRef] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkComponentCreate(BaseModel):
    items: List[ComponentCreate] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkComponentUpdate(BaseModel):
    items: List[ComponentUpdateItem] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


class BulkComponentDelete(BaseModel):
    components: List[ComponentRef] = Field(..., min_length=1, max_length=BULK_MAX_ITEMS)


# ============================================================================
# Export / Import Schemas
# ============================================================================

class ExportFormat(str, enum.Enum):
    JSON = "JSON"
    CSV = "CSV"


class ConflictResolution(str, enum.Enum):
    SKIP = "SKIP"
    OVERWRITE = "OVERWRITE"
    MERGE = "MERGE"


class RegistryData(BaseModel):
    modules: List[ModuleBase] = Field(default_factory=list)
    pages: List[PageBase] = Field(default_factory=list)
    components: List[ComponentBase] = Field(default_factory=list)


class ExportMetadata(BaseModel):
    exported_at: datetime
    exported_by: Optional[str] = None
    module_count: int
    page_count: int
    component_count: int


class RegistryExport(BaseModel):
    format: ExportFormat
    data: Optional[RegistryData] = None
    csv: Optional[str] = Field(None, description="CSV body when format is CSV")
    metadata: ExportMetadata


class RegistryImportData(BaseModel):
    modules: List[ModuleCreate] = Field(default_factory=list)
    pages: List[PageCreate] = Field(default_factory=list)
    components: List[ComponentCreate] = Field(default_factory=list)


class RegistryImportRequest(BaseModel):
    data: RegistryImportData
    conflict_resolution: ConflictResolution = ConflictResolution.SKIP
    validate_before_import: bool = True


class RegistryImportResult(BaseModel):
    success: bool
    imported_modules: int = 0
    imported_pages: int = 0
    imported_components: int = 0
    skipped_count: int = 0
    errors: List[str] = Field(default_factory=list)
    message: str


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Unique group name")
    description: Optional[str] = Field(None, max_length=1000)


class GroupCreate(GroupBase):
    active: bool = True


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    active: Optional[bool] = None


class GroupResponse(GroupBase):
    id: str
    created_by_id: Optional[str] = None
    active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupDetailResponse(GroupResponse):
    permission_count: int
    member_count: int


# ============================================================================
# Group Permission Entry Schemas
# ============================================================================

class PermissionEntryCreate(BaseModel):
    """
    Schema for adding an entry to a group.

    ``resource_type`` is always the module key. ``resource_identifier`` is the
    module key for MODULE, the page key for PAGE and ``page.component`` for
    COMPONENT.
    """
    permission_type: PermissionType
    resource_type: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH)
    resource_identifier: str = Field(..., min_length=1, max_length=2 * KEY_MAX_LENGTH + 1)
    action: PermissionAction
    granted: bool = True


class PermissionEntryUpdate(BaseModel):
    permission_type: Optional[PermissionType] = None
    resource_type: Optional[str] = Field(None, min_length=1, max_length=KEY_MAX_LENGTH)
    resource_identifier: Optional[str] = Field(None, min_length=1, max_length=2 * KEY_MAX_LENGTH + 1)
    action: Optional[PermissionAction] = None
    granted: Optional[bool] = None


class PermissionEntryResponse(BaseModel):
    id: str
    group_id: str
    permission_type: PermissionType
    resource_type: str
    resource_identifier: str
    action: PermissionAction
    granted: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Membership Schemas
# ============================================================================

class AssignUserToGroup(BaseModel):
    user_id: str = Field(..., description="User ID to add to the group")


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    group_id: str
    assigned_by_id: Optional[str] = None
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Evaluation Schemas
# ============================================================================

class ResourceDescriptor(BaseModel):
    """Address of a protected resource. See ``PermissionEntryCreate`` for key conventions."""
    permission_type: PermissionType
    resource_type: str
    resource_identifier: str

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.permission_type.value}:{self.resource_type}:{self.resource_identifier}"


class DecisionSource(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN_ROLE = "ADMIN_ROLE"
    UNREGISTERED = "UNREGISTERED"
    NO_GROUPS = "NO_GROUPS"
    GROUP = "GROUP"
    DEFAULT_DENY = "DEFAULT_DENY"


class PermissionDecision(BaseModel):
    allowed: bool
    decided_by: DecisionSource
    reason: str
    group_ids: List[str] = Field(default_factory=list, description="Groups whose entries produced the verdict")


class PermissionCheckRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="Defaults to the authenticated user")
    permission_type: PermissionType
    resource_type: str = Field(..., min_length=1, max_length=KEY_MAX_LENGTH)
    resource_identifier: str = Field(..., min_length=1, max_length=2 * KEY_MAX_LENGTH + 1)
    action: PermissionAction = PermissionAction.READ


class PermissionCheckResponse(BaseModel):
    has_permission: bool
    user_id: str
    permission_type: PermissionType
    resource_type: str
    resource_identifier: str
    action: PermissionAction
    decided_by: DecisionSource
    message: str


class GroupSummary(BaseModel):
    id: str
    name: str

    model_config = ConfigDict(from_attributes=True)


class PermissionSummary(BaseModel):
    total_groups: int
    total_keys: int
    granted_count: int
    denied_count: int
    module_count: int
    page_count: int
    component_count: int


class EffectivePermissionSet(BaseModel):
    """
    Flattened view of what a user can do.

    ``effective_permissions`` maps ``TYPE:resource_type:identifier`` to
    ``{action: allowed}``. An action appears when it is allowed or when some
    group explicitly denies it.
    """
    user_id: str
    role: UserRole
    groups: List[GroupSummary]
    static_modules: List[str]
    effective_permissions: Dict[str, Dict[PermissionAction, bool]]
    summary: PermissionSummary
    computed_at: datetime


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
