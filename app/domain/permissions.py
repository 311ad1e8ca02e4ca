from __future__ import annotations

from enum import StrEnum

PERM_MANAGE_PLANS = "manage_plans"
PERM_VIEW_PLANS = "view_plans"
PERM_MANAGE_SUBSCRIPTION = "manage_subscription"
PERM_VIEW_SUBSCRIPTION = "view_subscription"
PERM_VIEW_QUOTA = "view_quota"
PERM_CREATE_ROLE = "create_role"
PERM_UPDATE_ROLE = "update_role"
PERM_VIEW_ROLE = "view_role"
PERM_CREATE_PERMISSION = "create_permission"
PERM_VIEW_PERMISSION = "view_permission"
PERM_MANAGE_USERS = "manage_users"
PERM_VIEW_USERS = "view_users"
PERM_MANAGE_BRANCHES = "manage_branches"
PERM_CREATE_BRANCH = "create_branch"
PERM_VIEW_BRANCH = "view_branch"
PERM_UPLOAD_FILES = "upload_files"
PERM_VIEW_MENU = "view_menu"
PERM_EDIT_MENU = "edit_menu"
PERM_VIEW_ORDER = "view_order"
PERM_CHANGE_ORDER_STATUS = "change_order_status"

DEFAULT_PERMISSIONS: dict[str, str] = {
    PERM_MANAGE_PLANS: "create and edit plans and plan limits",
    PERM_VIEW_PLANS: "view the plan catalog",
    PERM_MANAGE_SUBSCRIPTION: "subscribe to or cancel a plan",
    PERM_VIEW_SUBSCRIPTION: "view subscriptions",
    PERM_VIEW_QUOTA: "view quota usage",
    PERM_CREATE_ROLE: "create roles",
    PERM_UPDATE_ROLE: "grant or revoke role permissions",
    PERM_VIEW_ROLE: "view roles",
    PERM_CREATE_PERMISSION: "create permissions",
    PERM_VIEW_PERMISSION: "view permissions",
    PERM_MANAGE_USERS: "create users and manage their permission overrides",
    PERM_VIEW_USERS: "view users",
    PERM_MANAGE_BRANCHES: "manage branches",
    PERM_CREATE_BRANCH: "create branches",
    PERM_VIEW_BRANCH: "view branches",
    PERM_UPLOAD_FILES: "upload files against the storage quota",
    PERM_VIEW_MENU: "view menus",
    PERM_EDIT_MENU: "edit menus",
    PERM_VIEW_ORDER: "view orders",
    PERM_CHANGE_ORDER_STATUS: "change order status",
}


class RoleTag(StrEnum):
    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    STAFF = "staff"
    CUSTOMER = "customer"


class PermissionScopeKind(StrEnum):
    TENANT = "tenant"
    BRANCH = "branch"


_TENANT_ADMIN_PERMISSIONS = [
    PERM_VIEW_PLANS,
    PERM_MANAGE_SUBSCRIPTION,
    PERM_VIEW_SUBSCRIPTION,
    PERM_VIEW_QUOTA,
    PERM_CREATE_ROLE,
    PERM_UPDATE_ROLE,
    PERM_VIEW_ROLE,
    PERM_VIEW_PERMISSION,
    PERM_MANAGE_USERS,
    PERM_VIEW_USERS,
    PERM_MANAGE_BRANCHES,
    PERM_CREATE_BRANCH,
    PERM_VIEW_BRANCH,
    PERM_UPLOAD_FILES,
    PERM_VIEW_MENU,
    PERM_EDIT_MENU,
    PERM_VIEW_ORDER,
    PERM_CHANGE_ORDER_STATUS,
]

# Global role templates seeded by the platform bootstrap. super_admin receives
# every permission in the catalog.
DEFAULT_ROLE_GRANTS: dict[RoleTag, list[str]] = {
    RoleTag.SUPER_ADMIN: list(DEFAULT_PERMISSIONS),
    RoleTag.TENANT_ADMIN: _TENANT_ADMIN_PERMISSIONS,
    RoleTag.STAFF: [PERM_VIEW_BRANCH, PERM_VIEW_MENU, PERM_VIEW_ORDER, PERM_CHANGE_ORDER_STATUS],
    RoleTag.CUSTOMER: [PERM_VIEW_MENU],
}
