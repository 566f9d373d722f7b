# linkly

This is the core of a URL shortening service. Links are stored in a SQL
database through SQLAlchemy. Redis holds cached lookups, click counters, a
stream of visit logs, login sessions and rate-limit counters.

## Modules

- `linkly.state` contains the shared pieces:
  - `ServiceError` is an exception that carries an `HTTPStatus` (`status`) and a `message`.
  - `Settings` holds the TTL bounds, the cache limits, the rate limits and `max_stats_days`.
  - `AppState` holds the engine, a list of Redis clients and the settings. `AppState.redis()` returns one of the clients at random.
  - `new_engine` and `new_redis_client` build the connections. `new_engine` creates a pool of at most five connections. `new_redis_client` decodes responses to `str`.
- `linkly.link` contains the storage functions:
  - the `links` and `visit_logs` tables, together with their `metadata`;
  - `LinkRecord`;
  - `LinkQuery`, which holds filters and paging. `limit` must be from 1 to 100 and `offset` must not be negative.
  - functions that read and write links, click counters and visit logs in the database and in Redis.
- `linkly.service` contains `ShortlinkService` and `encode_base62`.
- `linkly.tasks` contains `PeriodicTask`, the three one-shot jobs and `start_background_tasks`.
- `linkly.ratelimit` contains `check_rate_limit`, `ip_rate_limit` and `user_rate_limit`.
- `linkly.user` contains the `User` record, account queries, and the counters for failed logins and registrations.
- `linkly.session` contains `create_session`.

Every failure is raised as a `ServiceError`, so a web layer can map it directly to a response.

## Short links

`ShortlinkService.create(long_url, user_id, ttl=None, short_code=None)`:

1. Checks that the URL has a scheme and a host.
2. Checks `ttl`:
   - If `ttl` is omitted, it defaults to `Settings.shortlink_min_ttl`.
   - It must lie between `shortlink_min_ttl` and `shortlink_max_ttl`.
3. Stores the link.
4. Assigns the short code:
   - If the caller gives `short_code` and it is already taken, the error is 400 "Short code already exists".
   - Otherwise the code is the base62 form of the row id. On a collision the next id is tried, up to 100 attempts.
5. Caches the mapping in Redis for at most `redis_max_ttl` seconds and starts a click counter.
6. Returns `"{addr}/{code}"`.

`ShortlinkService.get_long_url(short_code, ip, user_agent, referer="")`:

- Looks in Redis first, then in the database.
- An expired link raises 404 "Link expired".
- A link found in the database is cached again if more than `redis_min_cache_ttl` seconds remain.
- Each hit increments the click counter and appends a record to the `visit_log` stream.

The other service methods:

- `list_links(query, user_id)` returns a page of the user's unexpired links, newest first, together with the total count.
- `delete_links(link_ids, user_id)` deletes the user's links and removes their Redis keys.
- `get_link_stats(short_code, user_id, days=30)` returns one `(yyyy-mm-dd, visits)` pair per day, with 0 for days that have no visits. `days` may not exceed `max_stats_days`.

## Usage

```python
from linkly.link import metadata
from linkly.service import ShortlinkService
from linkly.state import AppState, Settings, new_engine, new_redis_client

settings = Settings(
    database_url="sqlite:///shortlink.db",
    redis_url="redis://localhost:6379/0",
    addr="http://localhost:8080/s",
    jwt_secret="secret",
)
engine = new_engine(settings.database_url)
metadata.create_all(engine)  # creates the links and visit_logs tables

state = AppState(
    engine=engine,
    redis_clients=[new_redis_client(settings.redis_url) for _ in range(4)],
    settings=settings,
)
service = ShortlinkService(state)
short_url = service.create("https://example.com/some/long/path", user_id=1, ttl=3600)
```

Rate limiting uses a fixed window. It raises 429 "Too many requests" once the limit is passed:

```python
from linkly.ratelimit import ip_rate_limit
from linkly.state import ServiceError

try:
    ip_rate_limit(state, "127.0.0.1")
except ServiceError as err:
    print(int(err.status), err.message)
```

Background jobs:

```python
from linkly.tasks import start_background_tasks

tasks = start_background_tasks(state)
...
for task in tasks:
    task.stop()
```

Each job runs once when it starts and then repeats on a schedule:

| Job | Interval | What it does |
|---|---|---|
| Click counts | 900 s | Moves click counts from Redis into the database. |
| Visit logs | 1200 s | Moves the stream of visit logs into the database. |
| Expired links | 1800 s | Deletes expired links. |

## What this package does not do

- It has no HTTP server, no routes and no command to start one.
- It does not authenticate anyone. `Settings.jwt_secret` is stored but nothing uses it.
- It does not hash passwords. `create_user` stores the value exactly as it is given.
- It does not define the `users` table. That table must already exist with the columns `id`, `email`, `nickname`, `password` and `status`.
- `linkly.user` and `linkly.session` provide building blocks for login and registration, not the complete flow.

## Tests

```
pip install -e .[test]
pytest
```