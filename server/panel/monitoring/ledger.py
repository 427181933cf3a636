from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ..db.models import Command
from .types import AgentAction, RemoteCommand


class CommandLedger:
    """Append-only record of dispatched commands. Statuses are never stored."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(self, command: RemoteCommand) -> None:
        with Session(self.engine) as session:
            session.add(Command(
                command_id=command.command_id,
                host_id=command.target_host,
                action=command.action.value,
                submitted_at=command.submitted_at,
            ))
            session.commit()

    def list(self, host_id: str, limit: int = 50) -> list[RemoteCommand]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Command)
                .where(Command.host_id == host_id)
                .order_by(Command.submitted_at.desc(), Command.id.desc())
                .limit(limit)
            ).all()
            return [
                RemoteCommand(
                    command_id=r.command_id,
                    target_host=r.host_id,
                    action=AgentAction(r.action),
                    submitted_at=r.submitted_at,
                )
                for r in rows
            ]
