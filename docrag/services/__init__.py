"""Business-logic services for docrag."""
