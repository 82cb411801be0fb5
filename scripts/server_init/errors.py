"""Error taxonomy for a single-application deployment run.

Every fatal condition raises a :class:`DeployError` subclass; the CLI turns
it into ``SystemExit`` with the message.  Conditions the pipeline tolerates
(proxy convergence, route validation, health probe) are logged instead.
"""
from __future__ import annotations


class DeployError(RuntimeError):
    """Base class for fatal deployment errors."""


class InputValidationError(DeployError, ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[input] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


class PreflightError(DeployError):
    pass


class SyncError(DeployError):
    pass


class CloneFailedError(SyncError):
    pass


class FetchFailedError(SyncError):
    pass


class BranchNotFoundError(SyncError):
    def __init__(self, branch: str):
        super().__init__(f"Branch {branch} does not exist on the remote")
        self.branch = branch


class BuildDescriptorMissingError(DeployError):
    pass


class PortExhaustedError(DeployError):
    def __init__(self, range_start: int, range_end: int):
        super().__init__(f"Could not find an available host port in {range_start}-{range_end}")
        self.range_start = range_start
        self.range_end = range_end


class ProxyBootstrapError(DeployError):
    pass


class ContainerRuntimeError(DeployError):
    pass


class RouteRegistrationError(DeployError):
    pass
