"""Local storage module.

Git-based checkpoints for steps: snapshot, measure and revert the working
tree the pipeline operates on.
"""

from local_storage.git_versioner import GitError, LocalGitVersioner, VersionControl

__all__ = ["GitError", "LocalGitVersioner", "VersionControl"]
