import asyncio

from proxysieve.core.cancel import CANCELLED, TIMEOUT, CancelToken


def test_child_cancel_does_not_cancel_parent():
    async def scenario():
        parent = CancelToken()
        child = parent.child()
        child.cancel()
        return parent.cancelled, child.cancelled, child.reason

    assert asyncio.run(scenario()) == (False, True, CANCELLED)


def test_parent_cancel_reaches_grandchildren():
    async def scenario():
        run = CancelToken()
        grandchild = run.child().child(timeout=60)
        run.cancel()
        return grandchild.cancelled, grandchild.reason

    assert asyncio.run(scenario()) == (True, CANCELLED)


def test_timeout_reason():
    async def scenario():
        token = CancelToken(timeout=0.01)
        return await asyncio.wait_for(token.wait(), 2)

    assert asyncio.run(scenario()) == TIMEOUT


def test_child_of_cancelled_parent_starts_cancelled():
    async def scenario():
        parent = CancelToken()
        parent.cancel()
        child = parent.child(timeout=5)
        return child.cancelled, child.reason

    assert asyncio.run(scenario()) == (True, CANCELLED)


def test_closed_child_detaches():
    async def scenario():
        parent = CancelToken()
        with parent.child(timeout=60) as child:
            pass
        parent.cancel()
        return child.cancelled

    assert asyncio.run(scenario()) is False
