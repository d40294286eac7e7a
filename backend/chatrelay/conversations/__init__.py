"""Conversations: direct singletons per user pair, and named groups."""
