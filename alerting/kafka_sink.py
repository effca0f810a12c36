"""Kafka alert sink — publishes alerts as JSON to the `alerts` topic.

For deployments that already route alerts through Kafka: downstream
consumers (SIEM forwarders, dashboards, pagers) subscribe to one topic.
Keyed by component so one component's alerts stay ordered within a
partition.  `shield ddos monitor` creates the topic on startup.
"""

import json
import logging

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

from alerting.dispatcher import Alert, AlertDispatcher

logger = logging.getLogger(__name__)


def ensure_topic(bootstrap_servers: str, topic: str, partitions: int = 3,
                 replication_factor: int = 1) -> None:
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([
        NewTopic(topic, num_partitions=partitions, replication_factor=replication_factor)
    ])
    for t, f in fs.items():
        try:
            f.result()
            logger.info("Created topic '%s'", t)
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                logger.debug("Topic '%s' already exists", t)
            else:
                raise


class KafkaAlertSink(AlertDispatcher):

    def __init__(self, bootstrap_servers: str, topic: str = "alerts",
                 producer: Producer | None = None):
        self.topic = topic
        self.producer = producer or Producer({"bootstrap.servers": bootstrap_servers})

    def deliver(self, alert: Alert) -> bool:
        self.producer.produce(
            self.topic,
            key=alert.component,
            value=json.dumps(alert.to_dict()).encode("utf-8"),
            on_delivery=self._on_delivery,
        )
        # Serve delivery callbacks without blocking the caller.
        self.producer.poll(0)
        return True

    def close(self) -> None:
        remaining = self.producer.flush(5)
        if remaining:
            logger.warning("%d alert(s) still queued for topic %s after flush",
                           remaining, self.topic)

    @staticmethod
    def _on_delivery(err, msg):
        if err is not None:
            logger.error("Alert delivery to Kafka failed: %s", err)
