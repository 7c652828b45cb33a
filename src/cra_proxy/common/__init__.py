"""Shared configuration, logging and metrics helpers."""
