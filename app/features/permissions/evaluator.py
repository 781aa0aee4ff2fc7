"""
Permission evaluation engine.

Decides whether a user may perform an action on a registered resource by
combining the static role gate with the entries of the user's active groups.

Resolution order:
    1. OWNER is always allowed.
    2. Resources missing from the registry are denied.
    3. ADMIN is allowed on modules whose ``allowed_roles`` list ADMIN.
    4. Users without active groups are denied.
    5. Each group is resolved on its own by walking from the requested level
       up to the module (component -> page -> module). At the first level
       holding a relevant entry, an exact-action deny wins, otherwise a grant
       whose action implies the requested one allows.
    6. Any group denying denies overall. Otherwise any group allowing
       allows. Otherwise the request is denied.

Action implication: READ < WRITE < DELETE, a higher grant covers every lower
action. EXECUTE stands alone. Deny entries only match their exact action.
"""
import enum
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions import repository
from app.features.permissions.cache import PermissionCache
from app.features.permissions.exceptions import InvalidPermissionKey
from app.features.permissions.models import (
    PermissionAction,
    PermissionComponent,
    PermissionGroup,
    PermissionModule,
    PermissionPage,
    PermissionType,
)
from app.features.permissions.roles import StaticRoleGate, UserRoleSource
from app.features.permissions.schemas import (
    DecisionSource,
    EffectivePermissionSet,
    GroupSummary,
    PermissionDecision,
    PermissionSummary,
    ResourceDescriptor,
)
from app.features.users.models import User
from app.utils import get_logger

log = get_logger(__name__)

ACTION_RANK: Dict[PermissionAction, int] = {
    PermissionAction.READ: 1,
    PermissionAction.WRITE: 2,
    PermissionAction.DELETE: 3,
}


class Verdict(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    NO_OPINION = "NO_OPINION"


class EntryLike(Protocol):
    group_id: str
    permission_type: PermissionType
    resource_type: str
    resource_identifier: str
    action: PermissionAction
    granted: bool


# ============================================================================
# Pure rules
# ============================================================================

def coerce_action(action: Union[PermissionAction, str]) -> PermissionAction:
    try:
        return PermissionAction(action)
    except ValueError:
        raise InvalidPermissionKey(f"Unknown action: {action}")


def action_implies(granted: PermissionAction, requested: PermissionAction) -> bool:
    """Whether a grant of ``granted`` covers a request for ``requested``."""
    if granted == requested:
        return True
    if granted in ACTION_RANK and requested in ACTION_RANK:
        return ACTION_RANK[granted] >= ACTION_RANK[requested]
    return False


def build_descriptor(
    permission_type: Union[PermissionType, str],
    resource_type: str,
    resource_identifier: str,
) -> ResourceDescriptor:
    """
    Validate a permission key and return its descriptor.

    Raises:
        InvalidPermissionKey: empty parts, a COMPONENT identifier not shaped
            ``page.component``, a PAGE identifier containing a dot or a MODULE
            identifier different from its resource type.
    """
    try:
        permission_type = PermissionType(permission_type)
    except ValueError:
        raise InvalidPermissionKey(f"Unknown permission type: {permission_type}")

    if not resource_type or not resource_identifier:
        raise InvalidPermissionKey("Resource type and identifier must not be empty")
    if "." in resource_type:
        raise InvalidPermissionKey(f"Resource type must be a module key, got '{resource_type}'")

    if permission_type == PermissionType.MODULE and resource_identifier != resource_type:
        raise InvalidPermissionKey(
            f"Module permission identifier must equal the module key ('{resource_type}'), got '{resource_identifier}'"
        )
    if permission_type == PermissionType.PAGE and "." in resource_identifier:
        raise InvalidPermissionKey(f"Page identifier must be a page key, got '{resource_identifier}'")
    if permission_type == PermissionType.COMPONENT:
        parts = resource_identifier.split(".")
        if len(parts) != 2 or not all(parts):
            raise InvalidPermissionKey(
                f"Component identifier must be 'page.component', got '{resource_identifier}'"
            )

    return ResourceDescriptor(
        permission_type=permission_type,
        resource_type=resource_type,
        resource_identifier=resource_identifier,
    )


def resolution_chain(descriptor: ResourceDescriptor) -> List[ResourceDescriptor]:
    """Levels to consult, most specific first."""
    module_key = descriptor.resource_type
    module = ResourceDescriptor(
        permission_type=PermissionType.MODULE,
        resource_type=module_key,
        resource_identifier=module_key,
    )
    if descriptor.permission_type == PermissionType.MODULE:
        return [module]
    if descriptor.permission_type == PermissionType.PAGE:
        return [descriptor, module]
    page_key = descriptor.resource_identifier.split(".", 1)[0]
    page = ResourceDescriptor(
        permission_type=PermissionType.PAGE,
        resource_type=module_key,
        resource_identifier=page_key,
    )
    return [descriptor, page, module]


def _entry_key(entry: EntryLike) -> Tuple[PermissionType, str, str]:
    return (PermissionType(entry.permission_type), entry.resource_type, entry.resource_identifier)


def resolve_group_verdict(
    entries: Iterable[EntryLike],
    chain: Sequence[ResourceDescriptor],
    action: PermissionAction,
) -> Verdict:
    """Resolve one group's entries against a resolution chain."""
    by_key: Dict[Tuple[PermissionType, str, str], List[EntryLike]] = defaultdict(list)
    for entry in entries:
        by_key[_entry_key(entry)].append(entry)

    for level in chain:
        level_entries = by_key.get((level.permission_type, level.resource_type, level.resource_identifier), [])
        if any(not e.granted and e.action == action for e in level_entries):
            return Verdict.DENY
        if any(e.granted and action_implies(e.action, action) for e in level_entries):
            return Verdict.ALLOW
    return Verdict.NO_OPINION


def combine_verdicts(verdicts: Iterable[Verdict]) -> Verdict:
    """Deny beats allow across groups; no opinion everywhere is a deny."""
    seen = set(verdicts)
    if Verdict.DENY in seen:
        return Verdict.DENY
    if Verdict.ALLOW in seen:
        return Verdict.ALLOW
    return Verdict.DENY


def split_page_key(page_key: str) -> Tuple[str, str]:
    """Split a composite ``module.page`` key."""
    parts = page_key.split(".")
    if len(parts) != 2 or not all(parts):
        raise InvalidPermissionKey(f"Page key must be 'module.page', got '{page_key}'")
    return parts[0], parts[1]


class RegistrySnapshot:
    """In-memory view of registered keys, used when evaluating many keys at once."""

    def __init__(
        self,
        modules: Iterable[PermissionModule],
        pages: Iterable[PermissionPage],
        components: Iterable[PermissionComponent],
    ):
        self.modules: Dict[str, PermissionModule] = {m.module_key: m for m in modules}
        self.pages: Set[Tuple[str, str]] = {(p.module_key, p.page_key) for p in pages}
        self.components: Set[Tuple[str, str]] = {(c.page_key, c.component_key) for c in components}

    def is_registered(self, descriptor: ResourceDescriptor) -> bool:
        module_key = descriptor.resource_type
        if module_key not in self.modules:
            return False
        if descriptor.permission_type == PermissionType.MODULE:
            return True
        if descriptor.permission_type == PermissionType.PAGE:
            return (module_key, descriptor.resource_identifier) in self.pages
        page_key, component_key = descriptor.resource_identifier.split(".", 1)
        return (
            (module_key, page_key) in self.pages
            and (f"{module_key}.{page_key}", component_key) in self.components
        )

    def descendants(self, module_key: str) -> List[ResourceDescriptor]:
        """The module itself plus every registered page and component under it."""
        found = [ResourceDescriptor(
            permission_type=PermissionType.MODULE, resource_type=module_key, resource_identifier=module_key,
        )]
        for page_module, page_key in sorted(self.pages):
            if page_module != module_key:
                continue
            found.append(ResourceDescriptor(
                permission_type=PermissionType.PAGE, resource_type=module_key, resource_identifier=page_key,
            ))
            composite = f"{module_key}.{page_key}"
            for component_page, component_key in sorted(self.components):
                if component_page == composite:
                    found.append(ResourceDescriptor(
                        permission_type=PermissionType.COMPONENT,
                        resource_type=module_key,
                        resource_identifier=f"{page_key}.{component_key}",
                    ))
        return found


# ============================================================================
# Evaluator
# ============================================================================

class PermissionEvaluator:
    """
    Evaluates permission checks for one database session.

    Args:
        db: Async session used for user, registry and group lookups
        cache: Optional cache for ``get_user_permissions`` results

    Usage:
        evaluator = PermissionEvaluator(db)
        if await evaluator.has_permission(user_id, "COMPONENT", "support", "chat.delete_message", "WRITE"):
            ...
    """

    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache
        self.roles = UserRoleSource(db)
        self.gate = StaticRoleGate()

    async def has_permission(
        self,
        user_id: str,
        permission_type: Union[PermissionType, str],
        resource_type: str,
        resource_identifier: str,
        action: Union[PermissionAction, str],
    ) -> bool:
        decision = await self.explain(user_id, permission_type, resource_type, resource_identifier, action)
        return decision.allowed

    async def explain(
        self,
        user_id: str,
        permission_type: Union[PermissionType, str],
        resource_type: str,
        resource_identifier: str,
        action: Union[PermissionAction, str],
    ) -> PermissionDecision:
        """
        Evaluate a check and report which rule decided it.

        Raises:
            InvalidPermissionKey: malformed key or unknown action
            UserNotFound: unknown user id
        """
        descriptor = build_descriptor(permission_type, resource_type, resource_identifier)
        action = coerce_action(action)
        user = await self.roles.get_user(user_id)
        decision = await self._evaluate(user, descriptor, action)
        log.debug(
            "Permission check user=%s key=%s action=%s -> %s (%s)",
            user_id, descriptor.key, action.value, decision.allowed, decision.decided_by.value,
        )
        return decision

    async def has_module_access(
        self, user_id: str, module_key: str, action: Union[PermissionAction, str] = PermissionAction.READ
    ) -> bool:
        return await self.has_permission(user_id, PermissionType.MODULE, module_key, module_key, action)

    async def has_page_access(
        self,
        user_id: str,
        module_key: str,
        page_key: str,
        action: Union[PermissionAction, str] = PermissionAction.READ,
    ) -> bool:
        return await self.has_permission(user_id, PermissionType.PAGE, module_key, page_key, action)

    async def has_component_access(
        self,
        user_id: str,
        page_key: str,
        component_key: str,
        action: Union[PermissionAction, str] = PermissionAction.READ,
    ) -> bool:
        """``page_key`` is the composite ``module.page`` key, e.g. ``support.chat``."""
        module_key, page = split_page_key(page_key)
        return await self.has_permission(
            user_id, PermissionType.COMPONENT, module_key, f"{page}.{component_key}", action
        )

    async def _is_registered(self, descriptor: ResourceDescriptor, module: Optional[PermissionModule]) -> bool:
        if module is None:
            return False
        if descriptor.permission_type == PermissionType.MODULE:
            return True
        if descriptor.permission_type == PermissionType.PAGE:
            return await repository.get_page(self.db, descriptor.resource_type, descriptor.resource_identifier) is not None
        page_key, component_key = descriptor.resource_identifier.split(".", 1)
        if await repository.get_page(self.db, descriptor.resource_type, page_key) is None:
            return False
        composite = f"{descriptor.resource_type}.{page_key}"
        return await repository.get_component(self.db, composite, component_key) is not None

    async def _evaluate(
        self, user: User, descriptor: ResourceDescriptor, action: PermissionAction
    ) -> PermissionDecision:
        if self.gate.is_owner(user):
            return PermissionDecision(allowed=True, decided_by=DecisionSource.OWNER, reason="Owner has full access")

        module = await repository.get_module(self.db, descriptor.resource_type)
        if not await self._is_registered(descriptor, module):
            return PermissionDecision(
                allowed=False,
                decided_by=DecisionSource.UNREGISTERED,
                reason=f"Resource {descriptor.key} is not registered",
            )

        if self.gate.is_admin_eligible(user, module):
            return PermissionDecision(
                allowed=True,
                decided_by=DecisionSource.ADMIN_ROLE,
                reason=f"Role {user.role.value} is allowed on module '{descriptor.resource_type}'",
            )

        groups = await repository.list_groups_for_user(self.db, user.id, active_only=True)
        if not groups:
            return PermissionDecision(
                allowed=False, decided_by=DecisionSource.NO_GROUPS, reason="User belongs to no active group",
            )

        entries = await repository.list_entries_for_groups(self.db, [g.id for g in groups])
        return self._decide_from_groups(groups, entries, descriptor, action)

    @staticmethod
    def _group_entries(entries: Iterable[EntryLike]) -> Dict[str, List[EntryLike]]:
        grouped: Dict[str, List[EntryLike]] = defaultdict(list)
        for entry in entries:
            grouped[entry.group_id].append(entry)
        return grouped

    def _decide_from_groups(
        self,
        groups: Sequence[PermissionGroup],
        entries: Iterable[EntryLike],
        descriptor: ResourceDescriptor,
        action: PermissionAction,
    ) -> PermissionDecision:
        chain = resolution_chain(descriptor)
        by_group = self._group_entries(entries)
        verdicts = {g.id: resolve_group_verdict(by_group.get(g.id, []), chain, action) for g in groups}

        denying = [gid for gid, v in verdicts.items() if v == Verdict.DENY]
        if denying:
            return PermissionDecision(
                allowed=False,
                decided_by=DecisionSource.GROUP,
                reason=f"{action.value} on {descriptor.key} explicitly denied",
                group_ids=denying,
            )
        allowing = [gid for gid, v in verdicts.items() if v == Verdict.ALLOW]
        if allowing:
            return PermissionDecision(
                allowed=True,
                decided_by=DecisionSource.GROUP,
                reason=f"{action.value} on {descriptor.key} granted by group",
                group_ids=allowing,
            )
        return PermissionDecision(
            allowed=False,
            decided_by=DecisionSource.DEFAULT_DENY,
            reason=f"No group grants {action.value} on {descriptor.key}",
        )

    # ========================================================================
    # Effective permission set
    # ========================================================================

    async def get_user_permissions(self, user_id: str) -> EffectivePermissionSet:
        """
        Compute (or read from cache) everything the user can do.

        Raises:
            UserNotFound: unknown user id
        """
        generation = None
        if self.cache is not None:
            cached = await self.cache.get_user_permissions(user_id)
            if cached is not None:
                return cached
            generation = await self.cache.get_generation(user_id)

        user = await self.roles.get_user(user_id)
        groups = await repository.list_groups_for_user(self.db, user.id, active_only=True)
        entries = await repository.list_entries_for_groups(self.db, [g.id for g in groups])
        snapshot = RegistrySnapshot(
            await repository.list_all_modules(self.db),
            await repository.list_all_pages(self.db),
            await repository.list_all_components(self.db),
        )

        static_modules = [
            key for key, module in sorted(snapshot.modules.items())
            if self.gate.is_admin_eligible(user, module)
        ]

        candidates: Dict[str, ResourceDescriptor] = {}
        touched_modules = set(static_modules) | {e.resource_type for e in entries}
        for module_key in sorted(touched_modules):
            if module_key in snapshot.modules:
                for descriptor in snapshot.descendants(module_key):
                    candidates[descriptor.key] = descriptor

        by_group = self._group_entries(entries)
        effective: Dict[str, Dict[PermissionAction, bool]] = {}
        for key, descriptor in sorted(candidates.items()):
            if descriptor.resource_type in static_modules:
                effective[key] = {action: True for action in PermissionAction}
                continue
            chain = resolution_chain(descriptor)
            actions: Dict[PermissionAction, bool] = {}
            for action in PermissionAction:
                verdicts = [resolve_group_verdict(by_group.get(g.id, []), chain, action) for g in groups]
                if combine_verdicts(verdicts) == Verdict.ALLOW:
                    actions[action] = True
                elif Verdict.DENY in verdicts:
                    actions[action] = False
            if actions:
                effective[key] = actions

        result = EffectivePermissionSet(
            user_id=user.id,
            role=user.role,
            groups=[GroupSummary.model_validate(g) for g in groups],
            static_modules=static_modules,
            effective_permissions=effective,
            summary=self._summarize(len(groups), effective),
            computed_at=datetime.now(timezone.utc),
        )

        if generation is not None:
            await self.cache.set_user_permissions(result, generation)
        log.debug("Computed %d effective permission keys for user %s", len(effective), user_id)
        return result

    @staticmethod
    def _summarize(group_count: int, effective: Dict[str, Dict[PermissionAction, bool]]) -> PermissionSummary:
        flags = [allowed for actions in effective.values() for allowed in actions.values()]
        by_type = defaultdict(int)
        for key in effective:
            by_type[key.split(":", 1)[0]] += 1
        return PermissionSummary(
            total_groups=group_count,
            total_keys=len(effective),
            granted_count=sum(1 for f in flags if f),
            denied_count=sum(1 for f in flags if not f),
            module_count=by_type[PermissionType.MODULE.value],
            page_count=by_type[PermissionType.PAGE.value],
            component_count=by_type[PermissionType.COMPONENT.value],
        )

    async def invalidate_user(self, user_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_user_permissions(user_id)

    async def invalidate_users(self, user_ids: Iterable[str]) -> None:
        if self.cache is not None:
            await self.cache.invalidate_users(user_ids)

    async def invalidate_all(self) -> None:
        if self.cache is not None:
            await self.cache.invalidate_all()
