"""Authorization core: permission evaluation, caching and role governance services."""
