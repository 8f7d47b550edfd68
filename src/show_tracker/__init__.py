"""show_tracker: drone show operations log with archival and webhook export."""
