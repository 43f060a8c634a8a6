"""Background job targets executed by RQ workers."""
