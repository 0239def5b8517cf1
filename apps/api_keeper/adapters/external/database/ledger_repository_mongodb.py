# apps/api_keeper/adapters/external/database/ledger_repository_mongodb.py

import time
from typing import Dict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from ....core.domain.exceptions import InsufficientBalanceError, InvariantViolationError
from ....core.repositories.ledger_repository import LedgerRepository


class LedgerRepositoryMongoDB(LedgerRepository):
    """
    One document per agent holding every token balance, so a swap's debit and
    credit land in a single-document write. Amounts are stored as decimal
    strings (uint256 does not fit in int64).

    Writes are compare-and-swap on `version`; a lost race is retried a few
    times before giving up.
    """

    COLLECTION = "agent_balances"
    CUSTODY_COLLECTION = "custody_totals"
    MAX_CAS_RETRIES = 5

    def __init__(self, db: AsyncIOMotorDatabase):
        self._col = db[self.COLLECTION]
        self._custody = db[self.CUSTODY_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("agent_id", 1)], unique=True, name="ux_agent_id")
        await self._custody.create_index([("token", 1)], unique=True, name="ux_token")

    async def get_balance(self, agent_id: int, token: str) -> int:
        doc = await self._col.find_one({"agent_id": agent_id}, projection={"_id": False, "balances": True})
        if not doc:
            return 0
        return int((doc.get("balances") or {}).get(token, "0"))

    async def get_balances(self, agent_id: int) -> Dict[str, int]:
        doc = await self._col.find_one({"agent_id": agent_id}, projection={"_id": False, "balances": True})
        if not doc:
            return {}
        return {t: int(v) for t, v in (doc.get("balances") or {}).items()}

    async def total_tracked(self, token: str) -> int:
        total = 0
        cursor = self._col.find({f"balances.{token}": {"$exists": True}}, projection={"_id": False, "balances": True})
        async for doc in cursor:
            total += int(doc["balances"].get(token, "0"))
        return total

    async def get_custodied(self, token: str) -> int:
        doc = await self._custody.find_one({"token": token}, projection={"_id": False})
        return int(doc["amount"]) if doc else 0

    async def set_custodied(self, token: str, amount: int) -> None:
        now_ms = int(time.time() * 1000)
        await self._custody.update_one(
            {"token": token},
            {"$set": {"amount": str(int(amount)), "updated_at": now_ms}},
            upsert=True,
        )

    async def commit(
        self,
        agent_id: int,
        balance_deltas: Dict[str, int],
        custody_deltas: Dict[str, int],
    ) -> Dict[str, int]:
        for _ in range(self.MAX_CAS_RETRIES):
            doc = await self._col.find_one({"agent_id": agent_id}, projection={"_id": False})
            version = int(doc["version"]) if doc else 0
            staged = {t: int(v) for t, v in ((doc or {}).get("balances") or {}).items()}

            for token, delta in balance_deltas.items():
                new = staged.get(token, 0) + int(delta)
                if new < 0:
                    raise InsufficientBalanceError(agent_id, token, -int(delta), staged.get(token, 0))
                staged[token] = new

            now_ms = int(time.time() * 1000)
            update = {
                "$set": {
                    "balances": {t: str(v) for t, v in staged.items()},
                    "version": version + 1,
                    "updated_at": now_ms,
                },
                "$setOnInsert": {"created_at": now_ms},
            }
            try:
                res = await self._col.update_one(
                    {"agent_id": agent_id, "version": version} if doc else {"agent_id": agent_id, "version": {"$exists": False}},
                    update,
                    upsert=doc is None,
                )
            except DuplicateKeyError:
                # another writer created the document first
                continue
            if doc is not None and res.matched_count == 0:
                continue

            for token, delta in custody_deltas.items():
                await self._apply_custody_delta(token, int(delta))
            return staged

        raise InvariantViolationError(f"ledger write contention on agent {agent_id}")

    async def _apply_custody_delta(self, token: str, delta: int) -> None:
        for _ in range(self.MAX_CAS_RETRIES):
            doc = await self._custody.find_one({"token": token}, projection={"_id": False})
            current = doc["amount"] if doc else None
            new = (int(current) if current is not None else 0) + delta
            try:
                res = await self._custody.update_one(
                    {"token": token, "amount": current} if doc else {"token": token, "amount": {"$exists": False}},
                    {"$set": {"amount": str(new), "updated_at": int(time.time() * 1000)}},
                    upsert=doc is None,
                )
            except DuplicateKeyError:
                continue
            if doc is not None and res.matched_count == 0:
                continue
            return
        raise InvariantViolationError(f"custody write contention on {token}")
