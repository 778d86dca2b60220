"""
A service that renders deployable manifests.

A bake request names a template renderer (helm, helmfile, kustomize, jinja or
cloud foundry) and the artifacts to render. The bakery stages the artifacts,
runs the renderer as a job on a local, kubernetes or serverless backend and
returns the rendered output as an embedded artifact.
"""

__all__ = [
    "bake",
    "config",
    "exceptions",
    "fetch",
    "jobs",
    "kustomize",
    "manager",
    "model",
    "staging",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
