"""
Deployment module for PatchPilot

Everything that touches a deployed stack: reading and writing its compose
configuration (locally or through Portainer) and driving docker compose.

Components:
    - config_storage: local compose and .env file access
    - portainer_client: remote stack file access through the Portainer API
    - compose_runner: docker compose subprocess execution with streamed output
"""
