"""
Async helpers partagés par les drivers et l'orchestrateur
"""

import inspect


async def maybe_await(result):
    """Attend result si c'est un awaitable (callback sync ou async indifféremment)"""
    if inspect.isawaitable(result):
        return await result
    return result
