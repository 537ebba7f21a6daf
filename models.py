"""Value objects passed between watchers, the resolver and result sinks."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

STATUS_UPDATE = 'update'
STATUS_NO_UPDATE = 'no_update'
STATUS_ERROR = 'error'


@dataclass(frozen=True)
class ImageDescriptor:
    """Image deployed by a container, as seen during one watch cycle."""
    image: str
    version: str
    registry: Optional[str] = None
    registry_url: Optional[str] = None
    version_date: Optional[str] = None
    architecture: Optional[str] = None
    os: Optional[str] = None
    size: Optional[int] = None
    is_semver: bool = False
    include_tags: Optional[str] = None
    exclude_tags: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one image against its registry."""
    image: ImageDescriptor
    candidates: List[str] = field(default_factory=list)

    @property
    def new_version(self) -> Optional[str]:
        return self.candidates[0] if self.candidates else None


@dataclass
class ContainerResult:
    container_id: str
    container_name: str
    status: str
    image: Optional[ImageDescriptor] = None
    new_version: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CycleResult:
    watcher: str
    started_at: str
    finished_at: str
    results: List[ContainerResult] = field(default_factory=list)

    @property
    def updates(self) -> List[ContainerResult]:
        return [r for r in self.results if r.status == STATUS_UPDATE]

    @property
    def errors(self) -> List[ContainerResult]:
        return [r for r in self.results if r.status == STATUS_ERROR]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'watcher': self.watcher,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'results': [r.to_dict() for r in self.results],
        }
