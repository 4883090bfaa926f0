# import every model so Base.metadata is complete for create_all / alembic
from redevelopment.models.society import Society, SocietyMembership  # noqa: F401
from redevelopment.models.project import RedevelopmentProject, ProjectStatusTransition  # noqa: F401
from redevelopment.models.proposal import DeveloperProposal  # noqa: F401
from redevelopment.models.member_vote import MemberVote, Ballot  # noqa: F401
from redevelopment.models.notification import NotificationOutbox  # noqa: F401
from redevelopment.models.audit_log import AuditLogRecord  # noqa: F401
