"""Exit codes shared by memongo CLI commands."""

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
FIXTURE_ERROR = 3
EXECUTION_FAILURE = 4
