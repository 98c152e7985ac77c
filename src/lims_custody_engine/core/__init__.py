"""Core domain: models, collaborator interfaces, errors, and the custody services."""
