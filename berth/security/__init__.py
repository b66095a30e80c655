"""Hardened container profiles."""

from berth.security.profile import build_container_spec, parse_memory

__all__ = ["build_container_spec", "parse_memory"]
