"""


Guider Connections and Profiles

- ProfileStore: reads and edits the guider's equipment profile file. Works whether or not
  the guider is running, since the guider only reads the file at startup.
- Conduit: abstraction of a bi-directional channel. Combines 2 streams for reading and writing.
- Connector: opens a socket conduit to a guider endpoint (host, instance number.)
- JsonRpcProtocolHandler: sends requests over a conduit and matches the responses by id.
  Notifications without an id are posted as events.
- GuiderClient: one connection to a guider, and the typed commands it accepts.
- GuiderSession: keeps at most one client. Connects with retries and backoff on a background
  thread. Concurrent connect calls share a single attempt.
- EquipmentDirectory: lists cameras and mounts and selects which are used.
- ProfileInjector: runs the guider once to import a profile file.


## Threading

Callers run on their own threads. Each client has a background thread reading responses
and events from the socket; requests block the caller until the response arrives or the
call times out.

The session's connect loop runs on a daemon thread, and waits between attempts on a
cancellation token, so a cancel or a close wakes it immediately. Network I/O never runs
with the session lock held.

Profile edits are synchronous. Every edit of a file is one read-modify-write under a lock
shared by all stores for the same path.


"""
