from dataclasses import dataclass

from app.services.status_graph import ActorRole


@dataclass(slots=True)
class Principal:
    subject: str
    role: ActorRole
    scopes: set[str]
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
