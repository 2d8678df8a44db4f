"""
Permission catalog: the closed set of modules and actions.

Every layer that names a (module, action) pair goes through this module.
Identifiers outside the catalog are programming errors and raise
UnknownPermissionError; they are never treated as a plain denial.
"""
from itertools import product
from typing import Iterator, Tuple, Union

from django.db import models


class UnknownPermissionError(LookupError):
    """
    Raised when a caller names a module or action that is not in the catalog.

    This signals a bug in the caller, not a user-facing denial.
    """

    def __init__(self, module, action=None):
        self.module = module
        self.action = action
        if action is None:
            message = f"Unknown module {module!r}"
        else:
            message = f"Unknown permission {module!r}.{action!r}"
        super().__init__(message)


class Module(models.TextChoices):
    DASHBOARD = 'dashboard', 'Dashboard'
    EMPLOYEES = 'employees', 'Employees'
    EQUIPMENT = 'equipment', 'Equipment'
    DOCUMENTS = 'documents', 'Documents'

    COMMERCIAL_CLIENTS = 'commercial.clients', 'Clients'
    COMMERCIAL_LEADS = 'commercial.leads', 'Leads'
    COMMERCIAL_CONTACTS = 'commercial.contacts', 'Contacts'
    COMMERCIAL_QUOTES = 'commercial.quotes', 'Quotes'

    COMPANY_USERS = 'company.general.users', 'Users'
    COMPANY_ROLES = 'company.general.roles', 'Roles'
    COMPANY_AUDIT = 'company.general.audit', 'Audit log'
    COMPANY_DOCUMENTS = 'company.documents', 'Company documents'
    COMPANY_COST_CENTERS = 'company.cost-centers', 'Cost centers'
    COMPANY_CONTRACT_TYPES = 'company.contract-types', 'Contract types'
    COMPANY_JOB_POSITIONS = 'company.job-positions', 'Job positions'
    COMPANY_JOB_CATEGORIES = 'company.job-categories', 'Job categories'
    COMPANY_UNIONS = 'company.unions', 'Unions'
    COMPANY_COLLECTIVE_AGREEMENTS = 'company.collective-agreements', 'Collective agreements'
    COMPANY_VEHICLE_BRANDS = 'company.vehicle-brands', 'Vehicle brands'
    COMPANY_VEHICLE_TYPES = 'company.vehicle-types', 'Vehicle types'
    COMPANY_EQUIPMENT_OWNERS = 'company.equipment-owners', 'Equipment owners'
    COMPANY_SECTORS = 'company.sectors', 'Sectors'
    COMPANY_TYPE_OPERATIVES = 'company.type-operatives', 'Operative types'
    COMPANY_CONTRACTORS = 'company.contractors', 'Contractors'
    COMPANY_DOCUMENT_TYPES = 'company.document-types', 'Document types'


class Action(models.TextChoices):
    VIEW = 'view', 'View'
    CREATE = 'create', 'Create'
    UPDATE = 'update', 'Update'
    DELETE = 'delete', 'Delete'


class AuditActionKind(models.TextChoices):
    ROLE_CREATED = 'role_created', 'Role created'
    ROLE_UPDATED = 'role_updated', 'Role updated'
    ROLE_DELETED = 'role_deleted', 'Role deleted'
    ROLE_PERMISSION_GRANTED = 'role_permission_granted', 'Role permission granted'
    ROLE_PERMISSION_REVOKED = 'role_permission_revoked', 'Role permission revoked'
    MEMBER_INVITED = 'member_invited', 'Member invited'
    MEMBER_ROLE_CHANGED = 'member_role_changed', 'Member role changed'
    MEMBER_DEACTIVATED = 'member_deactivated', 'Member deactivated'
    MEMBER_REACTIVATED = 'member_reactivated', 'Member reactivated'
    MEMBER_PERMISSION_GRANTED = 'member_permission_granted', 'Member permission granted'
    MEMBER_PERMISSION_REVOKED = 'member_permission_revoked', 'Member permission revoked'
    INVITATION_ACCEPTED = 'invitation_accepted', 'Invitation accepted'
    INVITATION_EXPIRED = 'invitation_expired', 'Invitation expired'
    INVITATION_CANCELLED = 'invitation_cancelled', 'Invitation cancelled'


class AuditTargetType(models.TextChoices):
    ROLE = 'role', 'Role'
    MEMBER = 'member', 'Member'
    INVITATION = 'invitation', 'Invitation'


# Ordered grouping used by permission matrices in the UI
MODULE_GROUPS = (
    ('general', 'General', (
        Module.DASHBOARD,
        Module.EMPLOYEES,
        Module.EQUIPMENT,
        Module.DOCUMENTS,
    )),
    ('commercial', 'Commercial', (
        Module.COMMERCIAL_CLIENTS,
        Module.COMMERCIAL_LEADS,
        Module.COMMERCIAL_CONTACTS,
        Module.COMMERCIAL_QUOTES,
    )),
    ('company_config', 'Company configuration', (
        Module.COMPANY_DOCUMENTS,
        Module.COMPANY_COST_CENTERS,
        Module.COMPANY_CONTRACT_TYPES,
        Module.COMPANY_JOB_POSITIONS,
        Module.COMPANY_JOB_CATEGORIES,
        Module.COMPANY_UNIONS,
        Module.COMPANY_COLLECTIVE_AGREEMENTS,
        Module.COMPANY_VEHICLE_BRANDS,
        Module.COMPANY_VEHICLE_TYPES,
        Module.COMPANY_EQUIPMENT_OWNERS,
        Module.COMPANY_SECTORS,
        Module.COMPANY_TYPE_OPERATIVES,
        Module.COMPANY_CONTRACTORS,
        Module.COMPANY_DOCUMENT_TYPES,
    )),
    ('company_admin', 'Company administration', (
        Module.COMPANY_USERS,
        Module.COMPANY_ROLES,
        Module.COMPANY_AUDIT,
    )),
)

OWNER_ROLE_SLUG = 'owner'
DEVELOPER_ROLE_SLUG = 'developer'
ADMIN_ROLE_SLUG = 'admin'

# Memberships holding one of these roles bypass grants and overrides
SYSTEM_ROLE_SLUGS = frozenset({OWNER_ROLE_SLUG, DEVELOPER_ROLE_SLUG})

# Seeded into every tenant. Grants of 'ALL' mean the full catalog.
SYSTEM_ROLES = {
    OWNER_ROLE_SLUG: {
        'name': 'Owner',
        'description': 'Full access to every module of the company',
        'color': '#7c3aed',
        'is_default': False,
        'grants': 'ALL',
    },
    DEVELOPER_ROLE_SLUG: {
        'name': 'Developer',
        'description': 'Platform support access with full permissions',
        'color': '#0ea5e9',
        'is_default': False,
        'grants': 'ALL',
    },
    ADMIN_ROLE_SLUG: {
        'name': 'Administrator',
        'description': 'Manages company data; role grants can be tuned per company',
        'color': '#16a34a',
        'is_default': True,
        'grants': 'ALL',
    },
}

PermissionKey = Tuple[Module, Action]


def validate_module(module: Union[Module, str]) -> Module:
    """Coerce ``module`` to a Module member or raise UnknownPermissionError."""
    try:
        return Module(module)
    except ValueError:
        raise UnknownPermissionError(module) from None


def validate_permission(module: Union[Module, str], action: Union[Action, str]) -> PermissionKey:
    """
    Coerce a (module, action) pair to catalog members.

    Raises:
        UnknownPermissionError: if either identifier is not in the catalog
    """
    try:
        return Module(module), Action(action)
    except ValueError:
        raise UnknownPermissionError(module, action) from None


def parse_permission_code(code: str) -> PermissionKey:
    """
    Parse ``"<module>:<action>"`` into a permission key.

    Module identifiers contain dots, so the action is split off the right.
    """
    module, sep, action = str(code).rpartition(':')
    if not sep:
        raise UnknownPermissionError(code)
    return validate_permission(module, action)


def permission_code(module: Union[Module, str], action: Union[Action, str]) -> str:
    module, action = validate_permission(module, action)
    return f"{module.value}:{action.value}"


def all_permission_keys() -> Iterator[PermissionKey]:
    """Every (module, action) pair in catalog order."""
    return product(Module, Action)


def is_system_role_slug(slug) -> bool:
    return slug in SYSTEM_ROLE_SLUGS
