"""Reminisce — semantic result cache for assistant tool calls."""
