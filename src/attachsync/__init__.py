"""attachsync - Attachment synchronization between a test tool and a work-item tracker."""

__version__ = "0.1.0"
