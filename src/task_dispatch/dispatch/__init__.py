"""In-process task dispatch for a fixed pool of named workers.

Tasks are scored, assigned to the fittest worker with spare capacity and
tracked through ``assigned -> in_progress -> completed|failed``. Around that
core sit a retrying point-to-point message channel, named trigger rules and
a session tracker that owns the shutdown policy.

Everything is synchronous and guarded by plain locks; retries run on a
``RetryScheduler`` so tests can drive the clock by hand.
"""
