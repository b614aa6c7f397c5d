from fastapi import APIRouter, Depends, Query

from database import get_db
from utils.security import require_admin
from utils.serializers import serialize_wallet
from utils.wallet_service import get_wallet, recompute_balance

router = APIRouter(prefix="/wallets", tags=["Wallets"])


@router.get("/{owner_type}/{owner_id}")
async def wallet_detail(
    owner_type: str,
    owner_id: str,
    limit: int = Query(50, ge=1, le=500),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    wallet = await get_wallet(db, owner_id, owner_type)
    doc = serialize_wallet(wallet, limit=limit)
    doc["reconciled"] = recompute_balance(wallet) == wallet.balance
    return doc
