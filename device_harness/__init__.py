"""Device test-run orchestration for Android emulators/devices and Apple simulators."""

__version__ = "0.1.0"
