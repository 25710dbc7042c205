from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Mapping, Protocol


@dataclass(frozen=True)
class ItemSpec:
    """One producible unit of a module (e.g. a plot variant)."""

    id: str
    label: str = ""
    params: dict[str, float] = field(default_factory=dict)
    palette: str | None = None
    colors: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ItemSpec":
        item_id = str(payload.get("id") or "").strip()
        if not item_id:
            raise ValueError("Catalog item requires a non-empty 'id'")
        params = {str(k): float(v) for k, v in dict(payload.get("params") or {}).items()}
        colors = tuple(str(c) for c in payload.get("colors") or ())
        tags = tuple(str(t) for t in payload.get("tags") or ())
        palette = payload.get("palette")
        return cls(
            id=item_id,
            label=str(payload.get("label") or item_id),
            params=params,
            palette=str(palette) if palette else None,
            colors=colors,
            tags=tags,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "params": dict(self.params),
            "palette": self.palette,
            "colors": list(self.colors),
            "tags": list(self.tags),
        }


@dataclass
class ModuleDescriptor:
    name: str
    type: str
    path: Path
    entry_file: Path
    entrypoint: str
    version: str = "0.0.0"
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    config_schema: Path | None = None
    items: list[ItemSpec] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModuleDiscoveryError:
    name: str
    path: Path
    message: str


@dataclass
class LoadResult:
    descriptor: ModuleDescriptor
    loaded: bool = False
    namespace: ModuleType | None = None
    instance: Any | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class InterfaceReport:
    """Capability check outcome for a loaded module.

    `contract` is "full", "minimal" or "invalid".
    """

    module_type: str
    contract: str
    present: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.contract in ("full", "minimal")


class PlotModule(Protocol):
    """What the orchestrator calls on a plot module.

    Minimal modules are called as `generate(data, item_id, config)` and list
    their items in the manifest. Full modules also provide `metadata`,
    `catalog` and `generate_batch`, and `generate` receives the `ItemSpec`.
    """

    def generate(self, data: Any, item: Any, config: dict[str, Any]) -> Any:  # pragma: no cover - protocol
        ...


class DomainModule(Protocol):
    def init(self, config: dict[str, Any]) -> Mapping[str, Any] | None:  # pragma: no cover - protocol
        ...


@dataclass
class LoadedModule:
    """A module that passed loading and interface validation."""

    descriptor: ModuleDescriptor
    instance: PlotModule | DomainModule
    interface: InterfaceReport

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def contract(self) -> str:
        return self.interface.contract

