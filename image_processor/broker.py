"""Task bus producer: publishes processing tasks to Kafka using aiokafka."""
import asyncio
from typing import List, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError, for_code
from loguru import logger

from image_processor.exceptions import BusPublishError
from image_processor.schemas import TaskMessage
from image_processor.settings import Settings


class TaskProducer:
    """Publish one task per upload, keyed by image id.

    Keying by image id puts every task for an image on the same partition,
    which keeps them in publication order for the consumer pool.
    """

    def __init__(
        self,
        bootstrap_servers: List[str],
        topic: str,
        partitions: int = 3,
        replication_factor: int = 1,
        write_timeout_ms: int = 10000,
        publish_timeout: float = 30.0,
        client_id: str = "image-processor-api",
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.partitions = partitions
        self.replication_factor = replication_factor
        self.publish_timeout = publish_timeout
        self.client_id = client_id
        self.write_timeout_ms = write_timeout_ms
        self.producer: Optional[AIOKafkaProducer] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskProducer":
        return cls(
            bootstrap_servers=settings.kafka_brokers,
            topic=settings.KAFKA_TASK_TOPIC,
            partitions=settings.KAFKA_TOPIC_PARTITIONS,
            replication_factor=settings.KAFKA_TOPIC_REPLICATION,
            write_timeout_ms=settings.KAFKA_WRITE_TIMEOUT_MS,
            publish_timeout=settings.PUBLISH_TIMEOUT,
        )

    async def ensure_topic(self) -> None:
        """Try once to create the task topic. An existing topic is not an error."""
        admin = AIOKafkaAdminClient(bootstrap_servers=self.bootstrap_servers, client_id=self.client_id)
        try:
            await admin.start()
            response = await admin.create_topics(
                [
                    NewTopic(
                        name=self.topic,
                        num_partitions=self.partitions,
                        replication_factor=self.replication_factor,
                    )
                ]
            )
            for topic, code, *_ in getattr(response, "topic_errors", []):
                if code == TopicAlreadyExistsError.errno:
                    logger.info(f"Topic {topic} already exists")
                elif code:
                    logger.warning(f"Topic creation for {topic} failed: {for_code(code).__name__}")
                else:
                    logger.info(f"Created topic {topic}")
        except TopicAlreadyExistsError:
            logger.info(f"Topic {self.topic} already exists")
        except KafkaError as e:
            logger.warning(f"Topic creation for {self.topic} failed: {e}")
        finally:
            await admin.close()

    async def start(self) -> None:
        if self.producer is None:
            # The default partitioner hashes the key; keyless sends are spread evenly
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                acks=1,
                request_timeout_ms=self.write_timeout_ms,
                value_serializer=lambda v: v.encode("utf-8"),
            )
            try:
                await producer.start()
            except KafkaError:
                await producer.stop()
                raise
            self.producer = producer
            logger.info(f"KafkaProducer '{self.client_id}' started")

    async def stop(self) -> None:
        if self.producer is not None:
            await self.producer.stop()
            self.producer = None
            logger.info(f"KafkaProducer '{self.client_id}' stopped")

    async def _send(self, task: TaskMessage):
        await self.start()
        return await self.producer.send_and_wait(
            self.topic,
            value=task.model_dump_json(),
            key=task.image_id.encode("utf-8"),
        )

    async def publish(self, image_id: str, actions: List[str], timestamp: Optional[int] = None) -> None:
        """
        Publish a task for an image and wait for the broker acknowledgement.

        Raises:
            BusPublishError: On transport errors or when the send exceeds the publish timeout
        """
        task = TaskMessage(image_id=image_id, actions=list(actions))
        if timestamp is not None:
            task.timestamp = timestamp

        logger.info(f"Sending task for image {image_id}, actions={task.actions}")
        try:
            metadata = await asyncio.wait_for(self._send(task), timeout=self.publish_timeout)
        except (KafkaError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to publish task for image {image_id}: {e!r}")
            raise BusPublishError(f"Failed to publish task for image {image_id}") from e

        logger.info(
            f"Task for image {image_id} published to {self.topic} "
            f"[partition:{metadata.partition}, offset:{metadata.offset}]"
        )
