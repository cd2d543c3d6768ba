"""Row storage for selection records."""
