"""Real-time infrastructure — change feed, its sources, and the dashboard socket.

Learn: Row changes flow through one in-process channel (feed.py):

1. Sources publish into it:
   - CommitCapture      — rows this process committed (capture.py)
   - PostgresChangeListener — NOTIFY from table triggers (listener.py)
   - RedisChangeRelay   — rows other processes committed (pubsub.py)
2. Dashboards subscribe to it and re-render their read models
3. The WebSocket pushes those read models to the browser (websocket.py)
"""
