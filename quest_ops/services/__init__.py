"""Payload and summary helpers used by ``quest_ops.service``.

Modules here are pure: they build row payloads for mutations and shape
query results for admin listings, without touching the backend.
"""
