# API endpoints
from . import execution, pain, sandbox

__all__ = ["execution", "pain", "sandbox"]
