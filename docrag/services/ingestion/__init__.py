"""Document ingestion: chunking, chunk validation and the document processor."""
