"""SQLite document store: schema, value codecs and the connection pool."""
