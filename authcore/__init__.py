"""Account authentication service: credentials, single-use tokens and sessions."""
