"""Service layer: index provisioning, sync mode orchestration, connector monitoring."""
