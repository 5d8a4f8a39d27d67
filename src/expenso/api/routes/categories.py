"""Category routes."""
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from expenso.api.deps import MutationResponse, get_repository
from expenso.ledger.repository import EntityRepository

router = APIRouter()


class CategoryCreateRequest(BaseModel):
    name: str


@router.get("", response_model=List[str])
async def list_categories(repo: EntityRepository = Depends(get_repository)):
    return repo.get_categories()


@router.post("", response_model=MutationResponse, status_code=201)
async def add_category(
    request: CategoryCreateRequest, repo: EntityRepository = Depends(get_repository)
):
    return MutationResponse.from_result(repo.add_category(request.name))


@router.delete("/{name}", response_model=MutationResponse)
async def delete_category(name: str, repo: EntityRepository = Depends(get_repository)):
    """The default category cannot be deleted (403)."""
    return MutationResponse.from_result(repo.delete_category(name))
