"""Settlement procedures; each takes a gateway registry and the db session."""
