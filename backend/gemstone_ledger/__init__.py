"""
Gemstone ledger service for AssetCraft AI.

This package holds the gemstone (virtual currency) core: the ledger that
owns the signed-in user's balance (in ledger.py), the session watcher that
loads it on sign-in (in session.py), reward sources and the generation
charge (in rewards.py), the profile stores it persists to (in store.py,
crud.py and database.py), configuration (in config.py) and the FastAPI
surface (in main.py).

The FastAPI application instance 'app' is exported from this package
for use by ASGI servers like Uvicorn.
"""


from .main import app


__all__ = ["app"]
