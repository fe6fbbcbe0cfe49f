from __future__ import annotations


class DeployError(RuntimeError):
    """Base error for deploy service operations."""


class BuildInProgressError(DeployError):
    """Raised when a build is requested while another one holds the project."""

    def __init__(self, project_id: int):
        super().__init__("project is already building")
        self.project_id = project_id


class RollbackTargetError(DeployError):
    """Raised when a rollback names a build that never succeeded."""

    def __init__(self, project_id: int, build_num: int):
        super().__init__(f"build #{build_num} not found or was not successful")
        self.project_id = project_id
        self.build_num = build_num


class WebhookNotFoundError(DeployError):
    """Raised for unknown webhook tokens and for projects with auto-deploy disabled."""

    def __init__(self) -> None:
        super().__init__("project not found or auto-deploy disabled")


class ProjectConfigError(DeployError):
    """Raised when a project's configuration does not allow the operation."""


class ServiceManagerError(DeployError):
    """Raised when the OS service manager rejects a command."""


class ProxyClientError(DeployError):
    """Raised when the reverse-proxy host API call fails."""
