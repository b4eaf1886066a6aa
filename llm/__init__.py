from .gateway import GenerationResult, LLMError, LLMGateway, get_gateway

__all__ = ["GenerationResult", "LLMError", "LLMGateway", "get_gateway"]
