"""Hook execution adapters."""

from postgres_db_fork.infrastructure.hooks.shell_hook_runner import ShellHookRunner

__all__ = ["ShellHookRunner"]
