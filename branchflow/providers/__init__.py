"""External collaborators driven by the orchestration engine.

Key Components:
    - GitPrimitive: Branch operations on a repository (LocalGitPrimitive via git CLI)
    - CodeHostingProvider: Pull requests and merges (GiteaHostingProvider via httpx)
    - ReviewerPool: Reviewer selection
"""

from branchflow.providers.base import CodeHostingProvider, GitPrimitive, ReviewerPool
from branchflow.providers.gitea_rest import GiteaHostingProvider
from branchflow.providers.local_git import LocalGitPrimitive

__all__ = [
    "CodeHostingProvider",
    "GitPrimitive",
    "GiteaHostingProvider",
    "LocalGitPrimitive",
    "ReviewerPool",
]
