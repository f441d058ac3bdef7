#!/usr/bin/env python3
import asyncio
import aiohttp
import argparse
import time
import random
import logging
from datetime import datetime, timezone

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Default settings
DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_ORDERS = 100
DEFAULT_CONCURRENCY = 10
DEFAULT_MONITOR_INTERVAL = 5  # seconds
DEFAULT_TIMEOUT = 300  # 5 minutes
PAYMENT_METHODS = ["credit_card", "debit_card", "bank_transfer"]
FINAL_STATUSES = {"shipped", "delivered", "payment_failed", "cancelled"}


class OrderLoadTester:
    def __init__(self, api_url, total_orders, concurrency, cancel_probability=0.0,
                 monitor_interval=DEFAULT_MONITOR_INTERVAL, timeout=DEFAULT_TIMEOUT):
        self.api_url = api_url.rstrip("/")
        self.total_orders = total_orders
        self.concurrency = concurrency
        self.cancel_probability = cancel_probability
        self.monitor_interval = monitor_interval
        self.timeout = timeout

        self.created_orders = []
        self.latencies = []
        self.start_time = None
        self.end_time = None

        # Statistics
        self.successful_orders = 0
        self.failed_orders = 0
        self.cancelled_orders = 0

    def _generate_order(self, user_id):
        item_count = random.randint(1, 3)
        return {
            "customer_id": f"load-test-{user_id}",
            "customer_email": f"user{user_id}@loadtest.com",
            "items": [
                {
                    "product_id": f"prod-{random.randint(0, 99)}",
                    "product_name": f"Product {random.randint(0, 99)}",
                    "quantity": random.randint(1, 5),
                    "unit_price": random.randint(10, 1000),
                }
                for _ in range(item_count)
            ],
            "shipping_address": {
                "street": f"{random.randint(1, 999)} Main St",
                "city": "San Francisco",
                "state": "CA",
                "postal_code": "94102",
                "country": "USA",
            },
            "payment_method": random.choice(PAYMENT_METHODS),
            "notes": f"Load test order created at {datetime.now(timezone.utc).isoformat()}",
        }

    async def create_order(self, session, index):
        """Create a single order with the API."""
        order_data = self._generate_order(random.randint(0, 9999))
        started = time.perf_counter()
        try:
            async with session.post(f"{self.api_url}/api/v1/orders", json=order_data) as response:
                self.latencies.append(time.perf_counter() - started)
                if response.status == 201:
                    result = await response.json()
                    self.created_orders.append(result["id"])
                    self.successful_orders += 1
                    logger.debug(f"Created order {index} with ID {result['id']}")
                    return result["id"]
                self.failed_orders += 1
                error_text = await response.text()
                logger.error(f"Failed to create order {index}: {response.status} - {error_text}")
                return None
        except aiohttp.ClientError as e:
            self.failed_orders += 1
            logger.error(f"Exception creating order {index}: {e}")
            return None

    async def cancel_order(self, session, order_id):
        payload = {"reason": "Load test cancellation"}
        try:
            async with session.post(f"{self.api_url}/api/v1/orders/{order_id}/cancel", json=payload) as response:
                if response.status == 200:
                    self.cancelled_orders += 1
                else:
                    logger.debug(f"Cancel of {order_id} refused: {response.status}")
        except aiohttp.ClientError as e:
            logger.error(f"Exception cancelling order {order_id}: {e}")

    async def check_order_status(self, session, order_id):
        """Check the status of an order."""
        try:
            async with session.get(f"{self.api_url}/api/v1/orders/{order_id}/status") as response:
                if response.status == 200:
                    result = await response.json()
                    return result.get("status", "unknown")
                logger.error(f"Failed to check order {order_id}: {response.status}")
                return "error"
        except aiohttp.ClientError as e:
            logger.error(f"Exception checking order {order_id}: {e}")
            return "error"

    async def _get_json(self, session, path):
        try:
            async with session.get(f"{self.api_url}{path}") as response:
                if response.status == 200:
                    return await response.json()
                logger.error(f"Failed to get {path}: {response.status}")
                return None
        except aiohttp.ClientError as e:
            logger.error(f"Exception getting {path}: {e}")
            return None

    async def monitor_queue_metrics(self, session):
        return await self._get_json(session, "/dashboard/metrics/queue")

    async def monitor_worker_metrics(self, session):
        return await self._get_json(session, "/dashboard/metrics/workers")

    async def run_monitoring(self, session):
        """Log queue and worker metrics until the creation phase ends."""
        while not self.end_time:
            queue_metrics = await self.monitor_queue_metrics(session)
            worker_metrics = await self.monitor_worker_metrics(session)
            if queue_metrics and worker_metrics:
                logger.info(f"Queue Metrics: Critical={queue_metrics.get('pending_critical', 0)}, "
                            f"High={queue_metrics.get('pending_high', 0)}, "
                            f"Default={queue_metrics.get('pending_default', 0)}, "
                            f"Low={queue_metrics.get('pending_low', 0)}, "
                            f"Processing={queue_metrics.get('processing', 0)}, "
                            f"DLQ={queue_metrics.get('dead_letters', 0)}")
                logger.info(f"Worker Metrics: Active={worker_metrics.get('active_workers', 0)}, "
                            f"Stale={worker_metrics.get('stale_workers', 0)}")
            await asyncio.sleep(self.monitor_interval)

    async def _status_breakdown(self, session):
        statuses = {}
        for order_id in self.created_orders:
            status = await self.check_order_status(session, order_id)
            statuses[status] = statuses.get(status, 0) + 1
        return statuses

    async def wait_for_fulfillment(self, session):
        """Wait for every order to reach a final status or time out."""
        logger.info(f"Waiting for orders to settle (timeout: {self.timeout}s)...")
        start_wait_time = time.time()
        progress_bar_length = 30
        statuses = {}

        while time.time() - start_wait_time < self.timeout:
            statuses = await self._status_breakdown(session)
            done = sum(count for status, count in statuses.items() if status in FINAL_STATUSES)
            completion_percentage = done / len(self.created_orders) * 100 if self.created_orders else 100
            progress = int(progress_bar_length * completion_percentage / 100)
            progress_bar = f"[{'#' * progress}{' ' * (progress_bar_length - progress)}]"
            logger.info(f"Fulfillment: {progress_bar} {completion_percentage:.1f}% "
                        f"({done}/{len(self.created_orders)}) - Elapsed: {time.time() - start_wait_time:.1f}s")
            logger.info(f"Status breakdown: {statuses}")
            if done == len(self.created_orders):
                logger.info("All orders have settled!")
                return statuses
            await asyncio.sleep(self.monitor_interval)

        logger.warning(f"Timeout reached after {self.timeout}s. Some orders are still in flight.")
        return statuses

    async def run(self, wait=True):
        """Create all orders with the configured concurrency."""
        self.start_time = time.time()
        logger.info(f"Starting load test with {self.total_orders} orders, concurrency={self.concurrency}")
        semaphore = asyncio.Semaphore(self.concurrency)

        async with aiohttp.ClientSession() as session:
            monitor_task = asyncio.create_task(self.run_monitoring(session))

            async def bounded_create(index):
                async with semaphore:
                    order_id = await self.create_order(session, index)
                    if order_id and random.random() < self.cancel_probability:
                        await self.cancel_order(session, order_id)

            await asyncio.gather(*(bounded_create(i) for i in range(self.total_orders)))
            self.end_time = time.time()
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)

            final_statuses = await self.wait_for_fulfillment(session) if wait else {}
            final_queue_metrics = await self.monitor_queue_metrics(session)
            final_worker_metrics = await self.monitor_worker_metrics(session)

        return final_statuses, final_queue_metrics, final_worker_metrics

    def print_results(self, final_statuses, final_queue_metrics, final_worker_metrics):
        duration = self.end_time - self.start_time
        orders_per_second = self.successful_orders / duration if duration else 0.0
        latencies = sorted(self.latencies)
        p95 = latencies[int(len(latencies) * 0.95) - 1] if latencies else 0.0

        print("\n" + "=" * 50)
        print("LOAD TEST RESULTS")
        print("=" * 50)
        print(f"Orders created: {self.successful_orders}")
        print(f"Failed order creations: {self.failed_orders}")
        print(f"Orders cancelled: {self.cancelled_orders}")
        print(f"Creation phase: {duration:.2f} seconds ({orders_per_second:.2f} orders/s)")
        print(f"Create latency p95: {p95 * 1000:.0f} ms")

        if final_statuses:
            print("\nFinal Order Statuses:")
            for status, count in final_statuses.items():
                print(f"  {status}: {count} ({count / len(self.created_orders) * 100:.1f}%)")

        for title, metrics in (("Queue", final_queue_metrics), ("Worker", final_worker_metrics)):
            print(f"\nFinal {title} Metrics:")
            for key, value in (metrics or {}).items():
                print(f"  {key}: {value}")
        print("=" * 50)

        total = self.successful_orders + self.failed_orders
        if total and self.failed_orders / total < 0.05 and p95 < 0.5:
            print("LOAD TEST PASSED: error rate < 5% and p95 < 500ms")
        else:
            print("LOAD TEST FAILED: error rate or latency above threshold")


async def main():
    parser = argparse.ArgumentParser(description="Load test the order fulfillment API")
    parser.add_argument("--api-url", default=DEFAULT_API_URL, help=f"API URL (default: {DEFAULT_API_URL})")
    parser.add_argument("--orders", type=int, default=DEFAULT_ORDERS,
                        help=f"Number of orders to create (default: {DEFAULT_ORDERS})")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY,
                        help=f"Number of concurrent order creations (default: {DEFAULT_CONCURRENCY})")
    parser.add_argument("--cancel-prob", type=float, default=0.0,
                        help="Probability of cancelling an order right after creating it (default: 0)")
    parser.add_argument("--monitor-interval", type=int, default=DEFAULT_MONITOR_INTERVAL,
                        help=f"Seconds between status checks (default: {DEFAULT_MONITOR_INTERVAL})")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                        help=f"Maximum seconds to wait for orders to settle (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--no-wait", action="store_true",
                        help="Don't wait for orders to settle (exit after creation)")

    args = parser.parse_args()

    tester = OrderLoadTester(
        api_url=args.api_url,
        total_orders=args.orders,
        concurrency=args.concurrency,
        cancel_probability=args.cancel_prob,
        monitor_interval=args.monitor_interval,
        timeout=args.timeout,
    )
    results = await tester.run(wait=not args.no_wait)
    tester.print_results(*results)


if __name__ == "__main__":
    asyncio.run(main())
