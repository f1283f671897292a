"""Offline translation pipeline for the multilingual site locales."""
