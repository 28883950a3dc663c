"""Persistence layers for snapshots and job history."""
