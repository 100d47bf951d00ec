"""Scheduling and lifecycle core: store, resolver, isolator, scheduler, detector, gates, merge."""
