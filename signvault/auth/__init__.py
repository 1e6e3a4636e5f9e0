"""Provider OAuth: authorization flow and just-in-time token refresh."""
