"""Concrete adapters behind the docrag interfaces."""
