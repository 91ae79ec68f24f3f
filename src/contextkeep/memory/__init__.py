from contextkeep.memory.integrator import MemoryIntegrator, MemoryResolution

__all__ = ["MemoryIntegrator", "MemoryResolution"]
