"""Shared configuration, logging and exception hierarchy."""
