from state.repository import InMemoryStore
from state.seed import load_dev_seed, snapshot_hash


async def reset_and_seed(store: InMemoryStore) -> str:
    """Reset the store and load the deterministic seed.
    Returns the snapshot hash for convenience in tests.
    """
    store.reset()
    await load_dev_seed(store)
    return await snapshot_hash(store)
