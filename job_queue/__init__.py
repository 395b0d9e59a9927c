"""
Job Queue — Sends scheduled jobs when they fall due.

The job store is the queue: the Dispatcher polls it on a fixed interval,
claims due rows with a conditional update and sends them one at a time.
The DeliveryRecorder writes the outcome back and notifies live listeners.
"""
