# utils/redis_keys.py
class RedisKeyManager:
    def __init__(self, system_prefix: str = "fulfillment"):
        self.system_prefix = system_prefix

    # Worker-related keys
    def active_workers_key(self) -> str:
        return f"{self.system_prefix}:active_workers"

    def worker_heartbeats(self) -> str:
        return f"{self.system_prefix}:worker_heartbeats"

    # Job-related keys
    def jobs_key(self) -> str:
        return f"{self.system_prefix}:jobs"

    def job_sequence_key(self) -> str:
        return f"{self.system_prefix}:job_sequence"

    def job_results_key(self) -> str:
        return f"{self.system_prefix}:job_results"

    def dead_letter_queue_key(self) -> str:
        return f"{self.system_prefix}:dead_letter_queue"

    def processing_queue_key(self) -> str:
        return f"{self.system_prefix}:processing_queue"

    # Queue keys
    def priority_queue(self, priority: str) -> str:
        return f"{self.system_prefix}:queue:{priority}"

    def scheduled_queue(self, priority: str) -> str:
        return f"{self.system_prefix}:scheduled:{priority}"

    # Orders
    def order_key(self, order_id: str) -> str:
        return f"{self.system_prefix}:order:{order_id}"

    def all_orders_key(self) -> str:
        return f"{self.system_prefix}:orders"

    def customer_orders_key(self, customer_id: str) -> str:
        return f"{self.system_prefix}:customer_orders:{customer_id}"

    # Inventory
    def stock_key(self) -> str:
        return f"{self.system_prefix}:stock"

    def inventory_applied_key(self, order_id: str) -> str:
        return f"{self.system_prefix}:inventory_applied:{order_id}"
