import json
import logging
import threading
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import paho.mqtt.client as mqtt
from circulation.config import settings
from circulation.utils.timezone import now_utc

logger = logging.getLogger(__name__)

LOAN_OVERDUE = "loan.overdue"
LOAN_DUE_SOON = "loan.due_soon"


@dataclass(frozen=True)
class LoanEvent:
    """Something the notification dispatcher may want to tell a member about."""
    name: str
    loan_id: int
    member_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=now_utc)

    def to_json(self) -> str:
        return json.dumps({
            "event": self.name,
            "loanId": str(self.loan_id),
            "memberId": str(self.member_id),
            "occurredAt": self.occurred_at.isoformat(),
            **self.payload,
        })


class LoanEventPublisher:
    """Publishes loan events to MQTT for the notification dispatcher.

    Delivery is best effort: when MQTT is disabled or the broker is
    unreachable the event is only logged."""

    def __init__(self):
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False
        self._lock = threading.Lock()

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client connects to broker."""
        if reason_code == 0:
            self.is_connected = True
            logger.info(f"MQTT client connected to {settings.mqtt_broker}:{settings.mqtt_port}")
        else:
            logger.error(f"MQTT connection failed with code {reason_code}")
            self.is_connected = False

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client disconnects from broker."""
        self.is_connected = False
        if reason_code != 0:
            logger.warning(f"MQTT client disconnected unexpectedly (rc={reason_code})")
        else:
            logger.info("MQTT client disconnected")

    def topic_for(self, event_name: str) -> str:
        return f"{settings.mqtt_event_topic_prefix}/{event_name}"

    def publish(self, event: LoanEvent) -> bool:
        """Publish one event; returns True when the broker accepted it."""
        topic = self.topic_for(event.name)
        if not self.is_running():
            logger.info(f"[EVENT] {event.name} for loan {event.loan_id} (MQTT not connected, not published)")
            return False

        try:
            result = self.client.publish(topic, event.to_json(), qos=1)
        except (ValueError, OSError) as e:
            logger.error(f"Error publishing {event.name} for loan {event.loan_id}: {e}", exc_info=True)
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"[EVENT] {event.name} for loan {event.loan_id} published to {topic}")
            return True
        logger.error(f"Failed to publish {event.name} to {topic}: rc={result.rc}")
        return False

    def _setup_tls(self):
        """Configure TLS/SSL for MQTT client."""
        if not settings.mqtt_use_tls:
            return

        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

        if settings.mqtt_ca_cert:
            ca_cert_path = Path(settings.mqtt_ca_cert)
            if not ca_cert_path.exists():
                logger.error(f"CA certificate file not found: {ca_cert_path}")
                raise FileNotFoundError(f"CA certificate file not found: {ca_cert_path}")
            context.load_verify_locations(cafile=str(ca_cert_path))
            logger.info(f"Loaded CA certificate from {ca_cert_path}")
        else:
            context.load_default_certs()
            logger.info("Using system default CA certificates")

        # Mutual TLS
        if settings.mqtt_client_cert and settings.mqtt_client_key:
            client_cert_path = Path(settings.mqtt_client_cert)
            client_key_path = Path(settings.mqtt_client_key)
            for path in (client_cert_path, client_key_path):
                if not path.exists():
                    logger.error(f"TLS file not found: {path}")
                    raise FileNotFoundError(f"TLS file not found: {path}")
            context.load_cert_chain(certfile=str(client_cert_path), keyfile=str(client_key_path))
            logger.info(f"Loaded client certificate from {client_cert_path}")

        if settings.mqtt_tls_insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            logger.warning("TLS insecure mode enabled - certificate verification disabled (not recommended for production)")
        else:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED

        self.client.tls_set_context(context)
        logger.info("TLS/SSL configured for MQTT connection")

    def connect(self):
        """Connect to the MQTT broker in the background."""
        if not settings.mqtt_enabled:
            logger.info("MQTT event publishing disabled; loan events will only be logged")
            return

        with self._lock:
            if self.client and self.is_connected:
                logger.info("MQTT client already connected")
                return

            client_id = f"library-circulation-{threading.current_thread().ident}"
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
            self.client.on_connect = self.on_connect
            self.client.on_disconnect = self.on_disconnect

            if settings.mqtt_use_tls:
                self._setup_tls()
                if settings.mqtt_port == 1883:
                    logger.warning("TLS enabled but port is 1883. Consider using port 8883 for MQTT over TLS.")

            if settings.mqtt_username and settings.mqtt_password:
                self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

            protocol = "TLS" if settings.mqtt_use_tls else "TCP"
            logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker}:{settings.mqtt_port} over {protocol}")
            try:
                self.client.connect(settings.mqtt_broker, settings.mqtt_port, keepalive=60)
            except OSError as conn_error:
                logger.warning(f"Initial MQTT connection failed: {conn_error}. The client will retry automatically.")
            # The network loop handles reconnection attempts
            self.client.loop_start()

    def disconnect(self):
        """Disconnect from MQTT broker."""
        with self._lock:
            if self.client:
                self.client.loop_stop()
                self.client.disconnect()
                self.is_connected = False
                logger.info("MQTT client disconnected")

    def is_running(self) -> bool:
        return self.client is not None and self.is_connected


event_publisher = LoanEventPublisher()
