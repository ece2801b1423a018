# review_agents/templates.py
from __future__ import annotations

import re
from typing import Any, Dict, Optional

from . import events as E

TEMPLATE_TITLES: Dict[str, Dict[str, str]] = {
    E.TPL_PAYMENT_CONFIRMATION: {"en": "Payment confirmed", "ar": "تم تأكيد الدفع"},
    E.TPL_CASE_ASSIGNED: {"en": "New case assigned", "ar": "تم تعيين حالة جديدة"},
    E.TPL_CASE_REASSIGNED: {"en": "Case reassigned", "ar": "تمت إعادة تعيين الحالة"},
    E.TPL_SLA_BREACH: {"en": "SLA breached", "ar": "تم تجاوز مهلة المراجعة"},
    E.TPL_SLA_REMINDER: {"en": "SLA reminder", "ar": "تنبيه قرب انتهاء مهلة المراجعة"},
    E.TPL_FILES_REQUESTED: {"en": "Additional files requested", "ar": "مطلوب ملفات إضافية"},
    E.TPL_CASE_COMPLETED: {"en": "Report ready", "ar": "التقرير جاهز"},
    E.TPL_ADMIN_ESCALATION: {"en": "Case needs attention", "ar": "حالة تحتاج إلى تدخل"},
}

# provider-side template ids for the email API
TEMPLATE_TO_EMAIL: Dict[str, str] = {
    E.TPL_PAYMENT_CONFIRMATION: "payment-success",
    E.TPL_CASE_ASSIGNED: "case-assigned",
    E.TPL_CASE_REASSIGNED: "case-reassigned",
    E.TPL_SLA_BREACH: "sla-breach",
    E.TPL_SLA_REMINDER: "sla-warning",
    E.TPL_FILES_REQUESTED: "files-requested",
    E.TPL_CASE_COMPLETED: "report-ready",
    E.TPL_ADMIN_ESCALATION: "admin-escalation",
}

_BODIES: Dict[str, str] = {
    E.TPL_PAYMENT_CONFIRMATION: "Payment for case {caseReference} is confirmed. Review is due by {slaDeadline}.",
    E.TPL_CASE_ASSIGNED: "Case {caseReference} has been assigned to you. Please start the review.",
    E.TPL_CASE_REASSIGNED: "Case {caseReference} has been reassigned ({reason}).",
    E.TPL_SLA_BREACH: "Case {caseReference} passed its review deadline of {slaDeadline}.",
    E.TPL_SLA_REMINDER: "Case {caseReference} is due in {hoursLeft}h (deadline {slaDeadline}).",
    E.TPL_FILES_REQUESTED: "More files are needed for case {caseReference}. The review clock is paused.",
    E.TPL_CASE_COMPLETED: "The report for case {caseReference} is ready.",
    E.TPL_ADMIN_ESCALATION: "Case {caseReference} needs manual attention ({reason}).",
}


def humanize_template(template: str) -> str:
    raw = (template or "").strip()
    if not raw:
        return "Notification"
    spaced = re.sub(r"[_\-]+", " ", raw)
    spaced = re.sub(r"\s+", " ", spaced).strip()
    return spaced.title()


def get_title(template: str, language: str = "en") -> str:
    entry = TEMPLATE_TITLES.get((template or "").strip())
    if not entry:
        return humanize_template(template)
    lang = (language or "en").strip().lower()
    return entry.get(lang) or entry.get("en") or humanize_template(template)


class _Missing(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_body(template: str, variables: Optional[Dict[str, Any]] = None) -> str:
    pattern = _BODIES.get((template or "").strip())
    if not pattern:
        return humanize_template(template)
    values = _Missing({k: "" if v is None else str(v) for k, v in (variables or {}).items()})
    return pattern.format_map(values)


def email_template_for(template: str) -> Optional[str]:
    return TEMPLATE_TO_EMAIL.get((template or "").strip())
