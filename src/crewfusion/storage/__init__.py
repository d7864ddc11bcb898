"""Artifact storage for exported stage outputs."""

from .artifacts import ArtifactRef, LocalStore, export_run, output_filename

__all__ = ["ArtifactRef", "LocalStore", "export_run", "output_filename"]
