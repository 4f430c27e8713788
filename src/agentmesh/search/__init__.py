"""Full-text search mirror backed by Typesense."""
