from .sharded_adam import ShardedAdam
