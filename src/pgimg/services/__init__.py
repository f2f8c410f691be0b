"""Service abstractions for the image, its manifest and the test harness."""

from pgimg.services.autoconfig import AutoConfigService, ResourceDetector
from pgimg.services.docker import DockerService
from pgimg.services.harness import TestHarness
from pgimg.services.manifest import Manifest
from pgimg.services.regression import RegressionRunner

__all__ = [
    "AutoConfigService",
    "ResourceDetector",
    "DockerService",
    "TestHarness",
    "Manifest",
    "RegressionRunner",
]
