"""Sheet and transaction routes.

Every mutation commits locally and returns immediately; the response says
whether the sync operation was queued.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from expenso.api.deps import MutationResponse, get_repository
from expenso.errors import NotFoundError
from expenso.ledger.repository import EntityRepository
from expenso.models.ledger import Sheet, SheetTotals, Transaction

router = APIRouter()


class SheetCreateRequest(BaseModel):
    name: str


class TransactionCreateRequest(BaseModel):
    amount: Decimal
    purpose: str
    kind: str
    category: Optional[str] = None


class TransactionUpdateRequest(BaseModel):
    amount: Optional[Decimal] = None
    purpose: Optional[str] = None
    kind: Optional[str] = None
    category: Optional[str] = None


@router.get("", response_model=List[Sheet])
async def list_sheets(repo: EntityRepository = Depends(get_repository)):
    return repo.list_sheets()


@router.post("", response_model=MutationResponse, status_code=201)
async def create_sheet(
    request: SheetCreateRequest, repo: EntityRepository = Depends(get_repository)
):
    return MutationResponse.from_result(repo.create_sheet(request.name))


@router.get("/sync-status")
async def all_sheets_sync_status(
    repo: EntityRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Counts of synced / local / syncing / error sheets."""
    return repo.check_all_sheets_sync_status()


@router.get("/{sheet_id}", response_model=Sheet)
async def get_sheet(sheet_id: str, repo: EntityRepository = Depends(get_repository)):
    sheet = repo.get_sheet(sheet_id)
    if sheet is None:
        raise NotFoundError(f"Sheet {sheet_id} not found")
    return sheet


@router.get("/{sheet_id}/totals", response_model=SheetTotals)
async def sheet_totals(sheet_id: str, repo: EntityRepository = Depends(get_repository)):
    sheet = repo.get_sheet(sheet_id)
    if sheet is None:
        raise NotFoundError(f"Sheet {sheet_id} not found")
    return repo.calculate_totals(sheet)


@router.get("/{sheet_id}/sync-status")
async def sheet_sync_status(
    sheet_id: str, repo: EntityRepository = Depends(get_repository)
) -> Dict[str, Any]:
    return repo.get_sheet_sync_status(sheet_id)


@router.post("/{sheet_id}/sync", response_model=MutationResponse)
async def force_sheet_sync(sheet_id: str, repo: EntityRepository = Depends(get_repository)):
    """Requeue whatever the sheet still needs and sync now."""
    return MutationResponse.from_result(await repo.force_sheet_sync(sheet_id))


@router.post("/{sheet_id}/retry", response_model=MutationResponse)
async def retry_sheet_sync(sheet_id: str, repo: EntityRepository = Depends(get_repository)):
    return MutationResponse.from_result(repo.retry_sheet_sync(sheet_id))


@router.get("/{sheet_id}/transactions", response_model=List[Transaction])
async def list_transactions(sheet_id: str, repo: EntityRepository = Depends(get_repository)):
    return repo.list_transactions(sheet_id)


@router.post("/{sheet_id}/transactions", response_model=MutationResponse, status_code=201)
async def add_transaction(
    sheet_id: str,
    request: TransactionCreateRequest,
    repo: EntityRepository = Depends(get_repository),
):
    result = repo.add_transaction(
        sheet_id,
        amount=request.amount,
        purpose=request.purpose,
        kind=request.kind,
        category=request.category,
    )
    return MutationResponse.from_result(result)


@router.patch("/{sheet_id}/transactions/{transaction_id}", response_model=MutationResponse)
async def update_transaction(
    sheet_id: str,
    transaction_id: str,
    request: TransactionUpdateRequest,
    repo: EntityRepository = Depends(get_repository),
):
    updates = request.model_dump(exclude_unset=True)
    return MutationResponse.from_result(
        repo.update_transaction(sheet_id, transaction_id, **updates)
    )


@router.delete("/{sheet_id}/transactions/{transaction_id}", response_model=MutationResponse)
async def delete_transaction(
    sheet_id: str,
    transaction_id: str,
    repo: EntityRepository = Depends(get_repository),
):
    return MutationResponse.from_result(repo.delete_transaction(sheet_id, transaction_id))
