"""FastAPI surface for docrag: routes, schemas, and middleware."""
