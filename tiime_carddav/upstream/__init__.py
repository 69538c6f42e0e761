"""
Upstream service integrations.

The gateway only depends on the ``UpstreamSession`` interface; ``tiime``
provides the implementation backed by the Tiime REST API.
"""
