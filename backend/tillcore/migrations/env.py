# Overview: Alembic environment for tillcore's programmatic upgrades.
#
# Revisions are applied by schema_service.apply_migrations(), which hands
# its open connection to Alembic through config.attributes["connection"].

from alembic import context

connection = context.config.attributes.get("connection")
if connection is None:
    raise RuntimeError("Run migrations through tillcore.services.schema_service.apply_migrations()")

context.configure(connection=connection, render_as_batch=True)

with context.begin_transaction():
    context.run_migrations()
