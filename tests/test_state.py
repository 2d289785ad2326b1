"""Tests for lock-protected lifecycle state transitions."""

from __future__ import annotations

import asyncio
import unittest

from healthassist.state import LifecycleState, StateManager


class StateManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate the lifecycle state machine."""

    async def test_starts_bootstrapping_and_is_not_active(self) -> None:
        manager = StateManager()
        self.assertEqual(await manager.get_state(), LifecycleState.BOOTSTRAPPING)
        self.assertFalse(await manager.is_active())
        await manager.transition_to(LifecycleState.ACTIVE)
        self.assertTrue(await manager.is_active())
        self.assertEqual(manager.current, LifecycleState.ACTIVE)

    async def test_transition_if_enforces_expected_state(self) -> None:
        manager = StateManager()
        changed = await manager.transition_if(
            LifecycleState.AWAITING_INTAKE, LifecycleState.ACTIVE
        )
        self.assertFalse(changed)
        self.assertEqual(await manager.get_state(), LifecycleState.BOOTSTRAPPING)

        changed = await manager.transition_if(
            LifecycleState.BOOTSTRAPPING, LifecycleState.AWAITING_INTAKE
        )
        self.assertTrue(changed)
        self.assertEqual(await manager.get_state(), LifecycleState.AWAITING_INTAKE)

    async def test_lock_allows_single_winner(self) -> None:
        manager = StateManager(LifecycleState.AWAITING_INTAKE)

        async def try_activate() -> bool:
            await asyncio.sleep(0)
            return await manager.transition_if(
                LifecycleState.AWAITING_INTAKE, LifecycleState.ACTIVE
            )

        results = await asyncio.gather(*(try_activate() for _ in range(10)))
        self.assertEqual(sum(1 for result in results if result), 1)
        self.assertEqual(await manager.get_state(), LifecycleState.ACTIVE)

    async def test_transitions_are_logged(self) -> None:
        manager = StateManager()
        with self.assertLogs("healthassist.state", level="INFO") as logs:
            await manager.transition_to(LifecycleState.SIGNED_OUT)
        self.assertTrue(any("lifecycle.state.transition" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
