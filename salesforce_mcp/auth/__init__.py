from salesforce_mcp.auth.manager import AuthenticationManager
from salesforce_mcp.auth.strategies import (
    AuthStrategy,
    OAuth2Strategy,
    UsernamePasswordStrategy,
)

__all__ = ["AuthenticationManager", "AuthStrategy", "OAuth2Strategy", "UsernamePasswordStrategy"]
