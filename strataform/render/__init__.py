"""Terminal rendering.

Modules
-------
renderer
    ``Renderer`` turns plans, apply summaries, state records and outputs
    into Rich renderables.
"""
