"""
Central constants for the EventPass application.
"""
from __future__ import annotations

# Actor roles, highest privilege first
ROLE_OWNER = "owner"
ROLE_PARTNER_ADMIN = "partner_admin"
ROLE_ORGANIZER = "organizer"
ROLE_GATE_STAFF = "gate_staff"
ROLES = (ROLE_OWNER, ROLE_PARTNER_ADMIN, ROLE_ORGANIZER, ROLE_GATE_STAFF)

ROLE_NAMES = {
    ROLE_OWNER: "Owner",
    ROLE_PARTNER_ADMIN: "Partner administrator",
    ROLE_ORGANIZER: "Organizer",
    ROLE_GATE_STAFF: "Gate staff",
}

PERMISSION_NAMES = {
    "events.view": "Events: view",
    "events.create": "Events: create",
    "events.edit": "Events: edit / archive",
    "events.delete": "Events: hard delete",
    "guests.view": "Guests: view",
    "guests.create": "Guests: create",
    "invites.view": "Passes: view",
    "invites.generate": "Passes: generate",
    "invites.revoke": "Passes: revoke",
    "statistics.view": "Scan logs: view",
    "check-in.scan": "Check-in: scan passes",
    "gates.manage": "Gates: manage",
    "users.view": "Accounts: view",
    "users.create": "Accounts: create",
    "partners.manage": "Partners: manage",
    "partners.webhook": "Partners: webhook settings",
    "audit.view": "Audit trail: view",
}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_OWNER: frozenset(PERMISSION_NAMES),
    ROLE_PARTNER_ADMIN: frozenset({
        "events.view", "events.create", "events.edit", "events.delete",
        "guests.view", "guests.create",
        "invites.view", "invites.generate", "invites.revoke",
        "statistics.view", "check-in.scan", "gates.manage",
        "users.view",
        "partners.webhook",
    }),
    ROLE_ORGANIZER: frozenset({
        "events.view", "events.create", "events.edit",
        "guests.view", "guests.create",
        "invites.view", "invites.generate",
        "statistics.view", "check-in.scan", "gates.manage",
    }),
    ROLE_GATE_STAFF: frozenset({
        "events.view", "guests.view", "statistics.view", "check-in.scan",
    }),
}

EVENT_STATUSES = ("draft", "active", "archived")
GUEST_TYPES = ("VIP", "Regular", "Staff", "Media", "Other")

# Pass lifecycle
PASS_UNUSED = "unused"
PASS_USED = "used"
PASS_REVOKED = "revoked"
PASS_EXPIRED = "expired"
PASS_STATUSES = (PASS_UNUSED, PASS_USED, PASS_REVOKED, PASS_EXPIRED)

# Scan result vocabulary (stable strings, shown at the gate)
SCAN_VALID = "valid"
SCAN_ALREADY_USED = "already_used"
SCAN_INVALID = "invalid"
SCAN_EXPIRED = "expired"
SCAN_REVOKED = "revoked"
SCAN_NOT_ALLOWED_ZONE = "not_allowed_zone"
SCAN_RESULTS = (
    SCAN_VALID,
    SCAN_ALREADY_USED,
    SCAN_INVALID,
    SCAN_EXPIRED,
    SCAN_REVOKED,
    SCAN_NOT_ALLOWED_ZONE,
)

PAYLOAD_VERSION = 1
MAX_ANONYMOUS_BATCH = 1000
MAX_ANONYMOUS_PREFIX = 50
ANONYMOUS_EMAIL_DOMAIN = "anonymous.local"

WEBHOOK_EVENTS = ("on_pass_generated", "on_check_in_valid", "on_check_in_invalid")
WEBHOOK_TEST_EVENT = "test"
# Check-in deliveries run inline with the scan response: one attempt, short timeout
CHECK_IN_WEBHOOK_TIMEOUT_SECONDS = 5
TEST_WEBHOOK_TIMEOUT_SECONDS = 5
MAX_GUEST_IMPORT = 5000
