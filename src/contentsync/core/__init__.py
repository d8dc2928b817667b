"""Core plumbing: node context, caches, remote client, async helpers."""
