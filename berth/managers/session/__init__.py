from berth.managers.session.session import SessionGuard, SessionOrchestrator, session_urls

__all__ = ["SessionGuard", "SessionOrchestrator", "session_urls"]
