"""Banter backend application."""
