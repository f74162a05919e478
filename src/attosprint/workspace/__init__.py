"""Git worktrees, heartbeats, test runner and the file-backed tracker."""
