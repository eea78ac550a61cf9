"""Ephemeral file hosting service.

Clients upload a file over HTTP, receive a stable retrieval URL, and the file
is reclaimed automatically after its retention window.
"""
