"""Read-only phase configuration used by callers to validate phase collections."""

from __future__ import annotations

from pathlib import Path

from prompt_fragments.config import Settings
from prompt_fragments.errors import NotFoundError
from prompt_fragments.models import Phase
from prompt_fragments.repository import DEFAULT_LOCK_TIMEOUT, CollectionRepository
from prompt_fragments.store import phase_collection


class PhaseCatalog:
    """Configured phases, loaded from the phases document."""

    def __init__(self, path: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path)
        self._repository = CollectionRepository(self.path, Phase, lock_timeout=lock_timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> PhaseCatalog:
        return cls(settings.phases_path, lock_timeout=settings.lock_timeout)

    def list(self) -> list[Phase]:
        return self._repository.read()

    def get(self, phase_id: str) -> Phase:
        for phase in self.list():
            if phase.id == phase_id:
                return phase
        raise NotFoundError(self.path.name, phase_id)

    def require(self, phase_id: str) -> str:
        """Return the collection name for a configured phase, or raise ``NotFoundError``."""
        return phase_collection(self.get(phase_id).id)
