# Package init for starterkit.models
from .audit import AuditLog as AuditLog
from .audit import File as File
from .export import DataExport as DataExport
from .metrics import ContainerMetricsHistory as ContainerMetricsHistory
from .metrics import ServiceUptimeHistory as ServiceUptimeHistory
from .organization import Organization as Organization
from .organization import OrganizationMember as OrganizationMember
from .user import Base as Base  # explicit re-export
from .user import LoginHistory as LoginHistory
from .user import OAuthProvider as OAuthProvider
from .user import User as User
from .user import UserAPIKey as UserAPIKey
from .user import UserPreferences as UserPreferences
from .user import UserSession as UserSession
from .user import UserTwoFactor as UserTwoFactor
