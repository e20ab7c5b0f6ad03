"""Persistence layer: engine, tables, RLS policies and the session store."""
