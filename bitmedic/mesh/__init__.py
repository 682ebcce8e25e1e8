"""Mesh-facing layer: text vocabulary, transport abstraction, resilience helpers.

The radio itself is external; this package only speaks the prefixed text
protocol over whatever ``MeshLink`` the host application provides.
"""
