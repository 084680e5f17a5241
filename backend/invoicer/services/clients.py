"""Client creation and ownership checks."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoicer.models.client import Client
from invoicer.schemas.client import ClientCreate
from invoicer.services.quota import CLIENT, reserve_quota

logger = logging.getLogger(__name__)


async def client_belongs_to(db: AsyncSession, client_id: str, owner_id: str) -> bool:
    result = await db.execute(
        select(Client.id).where(Client.id == client_id, Client.owner_id == owner_id)
    )
    return result.scalar_one_or_none() is not None


async def create_client(db: AsyncSession, owner_id: str, body: ClientCreate) -> Client:
    """Create a client, consuming one unit of the owner's client quota.

    The reservation is the first write so concurrent creates queue on the
    subscription row before anything else is inserted.
    """
    await reserve_quota(db, owner_id, CLIENT)

    client = Client(owner_id=owner_id, **body.model_dump())
    db.add(client)
    await db.flush()

    logger.info(f"Client {client.id} created for {owner_id}")
    return client
