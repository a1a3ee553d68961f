"""
auth/seed.py -- Default permissions, roles, and the root organization.

seed_defaults() is idempotent: roles and the organization that already exist
are left untouched, so it is safe to run on every startup.
"""

from __future__ import annotations

import logging

from auth.models import Organization, Permission, Role
from auth.store import UserStore

logger = logging.getLogger("sentinel.auth")

DEFAULT_ORGANIZATION = Organization(id="ORG-DEFAULT", name="Default Organization", path="/ORG-DEFAULT")

_PERMISSIONS: dict[str, tuple[str, str, str]] = {
    "perm-superadmin": ("*", "*", "Super Admin - All Permissions"),
    "perm-threat-read": ("threat", "read", "View threats"),
    "perm-threat-create": ("threat", "create", "Create threats"),
    "perm-threat-update": ("threat", "update", "Update threats"),
    "perm-threat-delete": ("threat", "delete", "Delete threats"),
    "perm-threat-export": ("threat", "export", "Export threat data"),
    "perm-case-read": ("case", "read", "View cases"),
    "perm-case-create": ("case", "create", "Open cases"),
    "perm-case-update": ("case", "update", "Update case details"),
    "perm-case-delete": ("case", "delete", "Delete cases"),
    "perm-case-assign": ("case", "assign", "Assign cases to analysts"),
    "perm-case-close": ("case", "close", "Close cases"),
    "perm-actor-read": ("actor", "read", "View threat actors"),
    "perm-actor-create": ("actor", "create", "Create actor profiles"),
    "perm-actor-update": ("actor", "update", "Update actor profiles"),
    "perm-asset-read": ("asset", "read", "View assets"),
    "perm-asset-update": ("asset", "update", "Update assets"),
    "perm-evidence-read": ("evidence", "read", "View evidence"),
    "perm-evidence-create": ("evidence", "create", "Upload evidence"),
    "perm-osint-read": ("osint", "read", "View OSINT data"),
    "perm-osint-collect": ("osint", "collect", "Collect OSINT"),
    "perm-response-read": ("response", "read", "View incident responses"),
    "perm-response-execute": ("response", "execute", "Execute responses"),
    "perm-playbook-read": ("playbook", "read", "View playbooks"),
    "perm-playbook-execute": ("playbook", "execute", "Run playbooks"),
    "perm-playbook-create": ("playbook", "create", "Create playbooks"),
    "perm-report-read": ("report", "read", "View reports"),
    "perm-report-create": ("report", "create", "Generate reports"),
    "perm-dashboard-read": ("dashboard", "read", "View dashboards"),
    "perm-user-read": ("user", "read", "View users"),
    "perm-user-create": ("user", "create", "Create users"),
    "perm-user-manage": ("user", "manage", "Manage users"),
    "perm-role-read": ("role", "read", "View roles"),
    "perm-role-manage": ("role", "manage", "Manage roles & permissions"),
    "perm-audit-read": ("audit", "read", "View audit logs"),
    "perm-audit-export": ("audit", "export", "Export audit logs"),
    "perm-settings-read": ("settings", "read", "View settings"),
    "perm-settings-write": ("settings", "write", "Modify settings"),
}

_ANALYST_BASE = [
    "perm-threat-read", "perm-threat-create", "perm-threat-update",
    "perm-case-read", "perm-case-create", "perm-case-update", "perm-case-assign",
    "perm-actor-read", "perm-actor-create", "perm-actor-update",
    "perm-asset-read", "perm-evidence-read", "perm-evidence-create",
    "perm-playbook-read", "perm-playbook-execute",
    "perm-report-read", "perm-report-create", "perm-dashboard-read",
]  # fmt: skip

# (id, name, description, parent_role_id, permission ids)
_ROLES: list[tuple[str, str, str, str | None, list[str]]] = [
    ("ROLE-SUPERADMIN", "Super Administrator", "Unrestricted system access", None, ["perm-superadmin"]),
    (
        "ROLE-ADMIN",
        "Administrator",
        "Full system management except super admin functions",
        None,
        [p for p in _PERMISSIONS if p != "perm-superadmin"],
    ),
    (
        "ROLE-MANAGER",
        "SOC Manager",
        "Team and case management",
        None,
        _ANALYST_BASE
        + ["perm-case-close", "perm-case-delete", "perm-threat-delete", "perm-user-read", "perm-role-read", "perm-audit-read"],
    ),
    (
        "ROLE-SENIOR-ANALYST",
        "Senior Security Analyst",
        "Advanced threat analysis and response",
        None,
        _ANALYST_BASE + ["perm-threat-delete", "perm-threat-export", "perm-case-close"],
    ),
    ("ROLE-ANALYST", "Security Analyst", "Standard SOC operations and investigations", None, _ANALYST_BASE),
    (
        "ROLE-JUNIOR-ANALYST",
        "Junior Analyst",
        "Basic threat monitoring and ticket handling",
        "ROLE-ANALYST",
        ["perm-threat-read", "perm-case-read", "perm-case-update", "perm-dashboard-read"],
    ),
    (
        "ROLE-INVESTIGATOR",
        "Threat Investigator",
        "Specialized threat hunting and OSINT",
        None,
        ["perm-threat-read", "perm-threat-create", "perm-threat-update", "perm-threat-export",
         "perm-actor-read", "perm-actor-create", "perm-actor-update",
         "perm-osint-read", "perm-osint-collect", "perm-evidence-read", "perm-evidence-create"],
    ),  # fmt: skip
    (
        "ROLE-RESPONDER",
        "Incident Responder",
        "Incident response and remediation",
        None,
        ["perm-case-read", "perm-case-create", "perm-case-update", "perm-response-read", "perm-response-execute",
         "perm-playbook-read", "perm-playbook-execute", "perm-asset-read", "perm-asset-update",
         "perm-evidence-read", "perm-evidence-create"],
    ),  # fmt: skip
    (
        "ROLE-AUDITOR",
        "Security Auditor",
        "Compliance and audit oversight",
        None,
        ["perm-audit-read", "perm-audit-export", "perm-user-read", "perm-role-read", "perm-threat-read",
         "perm-case-read", "perm-report-read", "perm-dashboard-read", "perm-settings-read"],
    ),  # fmt: skip
    (
        "ROLE-VIEWER",
        "Read-Only Viewer",
        "View-only dashboard access",
        None,
        ["perm-threat-read", "perm-case-read", "perm-dashboard-read", "perm-report-read"],
    ),
]


def _permission(perm_id: str) -> Permission:
    resource, action, description = _PERMISSIONS[perm_id]
    return Permission(resource=resource, action=action, id=perm_id, description=description)


def seed_defaults(store: UserStore) -> int:
    """Create missing default roles and the default organization. Returns roles created."""
    created = 0
    for role_id, name, description, parent, perm_ids in _ROLES:
        if store.get_role(role_id) is not None:
            continue
        store.create_role(
            Role(
                id=role_id,
                name=name,
                description=description,
                parent_role_id=parent,
                permissions=[_permission(p) for p in perm_ids],
            )
        )
        created += 1
    if store.get_organization(DEFAULT_ORGANIZATION.id) is None:
        store.create_organization(DEFAULT_ORGANIZATION)
    if created:
        logger.info("Seeded %d default roles", created)
    return created
