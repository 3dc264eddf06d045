"""
Provider adapters.

Importing this package registers every adapter with AdapterRegistry.
"""

from skillsync.connectors.base import AdapterRegistry, AuthenticatedClient, ProviderAdapter, ProviderConfig
from skillsync.connectors.github import GitHubAdapter
from skillsync.connectors.gitlab import GitLabAdapter
from skillsync.connectors.jira import JiraAdapter
from skillsync.connectors.slack import SlackAdapter

__all__ = [
    "AdapterRegistry",
    "AuthenticatedClient",
    "ProviderAdapter",
    "ProviderConfig",
    "GitHubAdapter",
    "GitLabAdapter",
    "JiraAdapter",
    "SlackAdapter",
]
