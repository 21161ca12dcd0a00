"""FastAPI control surface for the live assistant."""
