# review_agents/events.py
# Central list of case_events.event_type tags and notification template names.
CASE_DRAFT_CREATED = "CASE_DRAFT_CREATED"
CASE_SUBMITTED = "CASE_SUBMITTED"
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
CASE_READY_FOR_ASSIGNMENT = "CASE_READY_FOR_ASSIGNMENT"
CASE_ASSIGNED = "CASE_ASSIGNED"
CASE_ACCEPTED = "CASE_ACCEPTED"
CASE_REASSIGNED = "CASE_REASSIGNED"
CASE_REASSIGNMENT_FAILED = "CASE_REASSIGNMENT_FAILED"
CASE_COMPLETED = "CASE_COMPLETED"

SLA_BREACHED = "SLA_BREACHED"
SLA_PAUSED = "SLA_PAUSED"
SLA_RESUMED = "SLA_RESUMED"
SLA_REMINDER_QUEUED = "SLA_REMINDER_QUEUED"

FILES_REQUESTED = "FILES_REQUESTED"
FILES_RECEIVED = "FILES_RECEIVED"

DOCTOR_TIMEOUT_REASSIGNMENT = "DOCTOR_TIMEOUT_REASSIGNMENT"
DOCTOR_NOTIFIED = "DOCTOR_NOTIFIED"
ADMIN_NOTIFIED = "ADMIN_NOTIFIED"

STATUS_PREFIX = "status:"
NOTIFICATION_PREFIX = "notification:"


def status_event(status: str) -> str:
    return f"{STATUS_PREFIX}{status}"


def notification_event(template: str) -> str:
    return f"{NOTIFICATION_PREFIX}{template}"


# Notification templates
TPL_PAYMENT_CONFIRMATION = "payment_confirmation"
TPL_CASE_ASSIGNED = "case_assigned"
TPL_CASE_REASSIGNED = "case_reassigned"
TPL_SLA_BREACH = "sla_breach"
TPL_SLA_REMINDER = "sla_reminder"
TPL_FILES_REQUESTED = "files_requested"
TPL_CASE_COMPLETED = "case_completed"
TPL_ADMIN_ESCALATION = "admin_escalation"

# Reasons carried in reassignment / escalation payloads
REASON_SLA_BREACH = "sla_breach"
REASON_DOCTOR_TIMEOUT = "doctor_timeout"
REASON_NO_DOCTOR = "no_doctor_available"
REASON_FILES_REQUESTED = "files_requested"
REASON_FILES_RECEIVED = "files_received"
