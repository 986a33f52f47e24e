from .member import Member
from .kpi_week import KpiWeek
from .cooldown import AutomationCooldown
from .automation_log import AutomationLog
from .task import Task
from .note import MemberNote
from .outbound_message import OutboundMessage
from .system_settings import SystemSettings

__all__ = [
    "Member",
    "KpiWeek",
    "AutomationCooldown",
    "AutomationLog",
    "Task",
    "MemberNote",
    "OutboundMessage",
    "SystemSettings",
]
