"""FastAPI dependencies shared by the route modules."""
