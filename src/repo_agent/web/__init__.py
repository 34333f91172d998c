"""HTTP front end for the repository agent."""

from __future__ import annotations

from repo_agent.config import AgentSettings


def main(settings: AgentSettings | None = None) -> None:
    """Launch the HTTP server."""
    from repo_agent.web.app import run_server

    run_server(settings)
