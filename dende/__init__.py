"""dende: concurrent log watcher and VirusTotal hash poller with console/Telegram notifications."""

__version__ = "0.1.0"
