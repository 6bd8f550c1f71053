"""
Background job scheduling: queue, registry, worker and periodic timer
"""
