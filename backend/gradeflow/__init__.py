"""Assessment authoring, review and grading backend.

The package is split into pure workflow modules (`approval`, `session`,
`scoring`, `grading`) that never touch the database, and the service,
repository and HTTP layers (`services`, `repositories`, `main`) that
persist their results. `client` talks to the HTTP API from a front end.
"""
