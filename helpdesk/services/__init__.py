"""Service layer for the helpdesk.

Provides persistence and domain operations for conversations, messages,
customers, model usage, retrieval and the deferred job outbox.
"""
