"""Connection delays, the peer queue, the pruning strategy, the dialling service and its metrics."""