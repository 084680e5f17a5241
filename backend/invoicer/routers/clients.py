"""Client creation.  Each new client uses one unit of client quota.

Endpoints:
    POST /api/clients    Create a client
"""

from fastapi import APIRouter, Depends, status

from invoicer.auth.deps import get_current_owner
from invoicer.schemas.client import ClientCreate, ClientOut
from invoicer.services.ledger import LedgerService, get_ledger

router = APIRouter()


@router.post("", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
async def create_client(
    body: ClientCreate,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.create_client(owner_id, body)
