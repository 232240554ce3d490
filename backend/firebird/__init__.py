"""Firebird team chat backend."""
