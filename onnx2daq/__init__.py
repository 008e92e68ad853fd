"""
Convert ONNX models to the DAQ format of an NNAPI-style inference runtime.
"""

__version__ = "0.1.0"
