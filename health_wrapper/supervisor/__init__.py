from .process import BackendStartError, GatewayProcess, gateway_command

__all__ = ["BackendStartError", "GatewayProcess", "gateway_command"]
