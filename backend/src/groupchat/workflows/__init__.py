"""DBOS workflows for background jobs."""
