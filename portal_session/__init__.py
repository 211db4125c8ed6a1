"""Multi-tenant portal session and cross-tab logout coordination."""
from portal_session.config import LogoutMode, PortalSettings
from portal_session.session import PortalSession, SessionPhase, bootstrap

__version__ = "0.1.0"

__all__ = ["LogoutMode", "PortalSettings", "PortalSession", "SessionPhase", "bootstrap"]
