"""Core - settings, logging, error taxonomy, async helpers"""
