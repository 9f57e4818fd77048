"""auth/ -- Token lifecycle package for sessionguard.

Layer rule: auth/ imports stdlib, third-party libraries, and cache/.
It does NOT import from main. Transport layers (HTTP middleware, CLI)
import from auth/, not the other way around.
"""
