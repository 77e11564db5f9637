"""
CLI command handlers

Each handler runs its coroutine on a fresh session from AsyncSessionLocal.
"""
import asyncio
import json

from sqlalchemy.exc import SQLAlchemyError

from group_tiers.database import AsyncSessionLocal, close_db, init_db
from group_tiers.errors import APIError
from group_tiers.services import eligibility_service, phase_service, policy_service


def _run(coro) -> int:
    async def runner():
        try:
            await coro
        finally:
            await close_db()

    try:
        asyncio.run(runner())
        return 0
    except APIError as e:
        print(f"Error: {e.code} - {e.message}")
        return 1
    except SQLAlchemyError as e:
        print(f"Database error: {e}")
        return 1


class DbCommand:
    """Database CLI command handler."""

    def execute(self, args) -> int:
        if args.db_action == "init":
            print("=== Database Init ===")
            return _run(init_db())
        print("Error: Unknown db action")
        return 1


class PhaseCommand:
    """Phase CLI command handler."""

    def execute(self, args) -> int:
        if args.phase_action == "list":
            return _run(self._list())
        elif args.phase_action == "finalize":
            return _run(self._finalize())
        elif args.phase_action == "evaluate":
            return _run(self._evaluate(args.id))
        print("Error: Unknown phase action")
        return 1

    async def _list(self) -> None:
        async with AsyncSessionLocal() as db:
            phases = await phase_service.get_all_phases(db)

        if not phases:
            print("No phases found")
            return

        print(f"\n{'ID':<38} {'Start':<12} {'End':<12} {'Change day':<12} {'Status':<10}")
        print("-" * 86)
        for phase in phases:
            print(
                f"{phase['phase_id']:<38} {phase['start_date']:<12} {phase['end_date']:<12} "
                f"{phase['change_day']:<12} {phase['status']:<10}"
            )

    async def _finalize(self) -> None:
        async with AsyncSessionLocal() as db:
            finalized = await phase_service.finalize_expired_active_phases(db)
        print(f"Finalized {len(finalized)} phase(s)")
        for phase_id in finalized:
            print(f"  {phase_id}")

    async def _evaluate(self, phase_id: str) -> None:
        async with AsyncSessionLocal() as db:
            summary = await eligibility_service.evaluate_phase_eligibility(db, phase_id)
        print(json.dumps(summary, indent=2, default=str))


class PolicyCommand:
    """Operational policy CLI command handler."""

    def execute(self, args) -> int:
        if args.policy_action == "show":
            return _run(self._show())
        print("Error: Unknown policy action")
        return 1

    async def _show(self) -> None:
        async with AsyncSessionLocal() as db:
            policy = await policy_service.get_operational_policy(db)
        print(json.dumps(policy.to_dict(), indent=2))
