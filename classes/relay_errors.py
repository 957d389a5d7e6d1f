# classes/relay_errors.py


class RelayError(Exception):
    """Base class for every error the relay reports to its callers."""

    status_code = 500


class InvalidArgument(RelayError):
    status_code = 400


class SessionNotFound(RelayError):
    status_code = 404

    def __init__(self, project_id: str | None, session_id: str | None):
        self.project_id = project_id
        self.session_id = session_id
        super().__init__(f"Session not found: project_id={project_id} session_id={session_id}")


class QuotaExceeded(RelayError):
    status_code = 429

    def __init__(self, key: str, used: int, limit: int):
        self.key = key
        self.used = used
        self.limit = limit
        super().__init__("Daily quota exceeded")


class ProviderError(RelayError):
    status_code = 502


class ProviderTimeout(ProviderError):
    status_code = 504
