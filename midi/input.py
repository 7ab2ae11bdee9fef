import logging
import mido, threading
from midi.messages import from_mido
from routing.bus import EventBus

logger = logging.getLogger(__name__)


def start_midi_listener(bus: EventBus, port_hint: str = ""):
    """
    Open a MIDI input (prefer one containing `port_hint`) and forward
    note and controller events to the EventBus.
    Returns the thread object (daemon).
    """
    def run():
        names = mido.get_input_names()
        if not names:
            logger.warning("[MIDI] No MIDI inputs found.")
            return
        chosen = next((n for n in names if port_hint and port_hint.lower() in n.lower()), names[0])
        logger.info(f"[MIDI] Using input: {chosen}")

        with mido.open_input(chosen) as port:
            for msg in port:
                event = from_mido(msg)
                if event is not None:
                    bus.post(event)

    th = threading.Thread(target=run, name="MidiListenerThread", daemon=True); th.start()
    return th
