"""
Artifact staging: upload input files and issue time-bounded read references.
"""

from batchrun.src.staging.artifact_stager import ArtifactStager

__all__ = ["ArtifactStager"]
