from __future__ import annotations


class HarnessError(Exception):
    """Base class for errors raised by the harness itself."""


class ConfigurationError(HarnessError, ValueError):
    """A caller asked for something the configuration does not allow.

    Never retried automatically; the caller must fix the request.
    """


class UnknownItemError(ConfigurationError, KeyError):
    def __init__(self, module: str, item_id: str) -> None:
        self.module = module
        self.item_id = item_id
        super().__init__(f"Item '{item_id}' not found in module '{module}'")

    def __str__(self) -> str:
        return str(self.args[0])


class ArtifactTypeError(ConfigurationError):
    def __init__(self, artifact_type: str, allowed: list[str]) -> None:
        self.artifact_type = artifact_type
        self.allowed = list(allowed)
        super().__init__(
            f"Invalid artifact type '{artifact_type}'. Must be one of: "
            + ", ".join(self.allowed)
        )


class ModuleLoadError(HarnessError):
    pass


class ResultFrozenError(HarnessError, RuntimeError):
    pass
