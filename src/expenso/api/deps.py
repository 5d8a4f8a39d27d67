"""Request dependencies shared by the routers."""
from typing import Any, Generator, Optional

from fastapi import Request
from pydantic import BaseModel
from sqlmodel import Session

from expenso.ledger.repository import EntityRepository, MutationResult
from expenso.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_repository(request: Request) -> EntityRepository:
    return request.app.state.services.repository


def get_sync_session(request: Request) -> Generator[Session, None, None]:
    """Session on the database the sync engine writes its SyncLog rows to."""
    with Session(request.app.state.services.engine.db_engine) as session:
        yield session


class MutationResponse(BaseModel):
    entity: Any = None
    operation_id: Optional[str] = None
    queued: bool = False
    persisted: bool = True
    message: str = ""

    @classmethod
    def from_result(cls, result: MutationResult) -> "MutationResponse":
        return cls(
            entity=result.entity,
            operation_id=result.operation_id,
            queued=result.queued,
            persisted=result.persisted,
            message=result.message,
        )
