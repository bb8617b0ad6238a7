"""Standard exit codes for Scanwatch.

This module defines the exit codes used across the CLI for consistent
error reporting and scripting support.
"""


class ExitCode:
    """Standard exit codes for Scanwatch.
    
    These codes follow common Unix conventions where possible:
    - 0: Success
    - 1: General error
    - 130: Script terminated by Ctrl+C (SIGINT)
    
    Scanwatch-specific codes start at 2:
    - 2: Configuration error
    - 3: Pool exhausted
    - 4: Persistence error
    - 7: Invalid argument
    - 8: Not found
    """
    
    SUCCESS = 0
    GENERAL_ERROR = 1
    
    CONFIGURATION_ERROR = 2
    POOL_EXHAUSTED = 3
    PERSISTENCE_ERROR = 4
    INVALID_ARGUMENT = 7
    NOT_FOUND = 8
    
    CANCELLED = 130  # Ctrl+C (SIGINT = 2)
    
    @classmethod
    def get_name(cls, code: int) -> str:
        """Get the name of an exit code.
        
        Args:
            code: The exit code value
            
        Returns:
            Human-readable name for the exit code
        """
        names = {
            cls.SUCCESS: "SUCCESS",
            cls.GENERAL_ERROR: "GENERAL_ERROR",
            cls.CONFIGURATION_ERROR: "CONFIGURATION_ERROR",
            cls.POOL_EXHAUSTED: "POOL_EXHAUSTED",
            cls.PERSISTENCE_ERROR: "PERSISTENCE_ERROR",
            cls.INVALID_ARGUMENT: "INVALID_ARGUMENT",
            cls.NOT_FOUND: "NOT_FOUND",
            cls.CANCELLED: "CANCELLED",
        }
        return names.get(code, f"UNKNOWN({code})")
    
    @classmethod
    def is_success(cls, code: int) -> bool:
        """Check if an exit code indicates success."""
        return code == cls.SUCCESS
