"""SignSuite storage maintenance commands."""
