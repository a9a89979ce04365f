# bridgeinspect

Record keeping and reporting for bridge defect inspections. The package:

- keeps users, bridges, drones, detected defects and inspection reports in SQLite;
- stores the files behind those records on local disk;
- computes dashboard statistics, scoped to what a user is allowed to see;
- renders a multi-page PDF inspection report for a bridge with matplotlib.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Database (`bridgeinspect.database`)

```python
from bridgeinspect.database import connect, close

conn = connect("inspect.db")   # opens, checks the connection and migrates the schema
...
close(conn)
```

- `connect(path)` opens the SQLite database and calls `migrate`. Rows come back
  as `sqlite3.Row`, and `DATETIME` columns are read as `datetime`.
- `migrate(conn)` creates any missing tables and indexes. It then calls
  `create_default_admin`.
- `create_default_admin(conn)` creates an administrator account when no
  administrator exists. The password is stored as a bcrypt hash. It returns the
  new `User`, or `None` if there was already an administrator. The account's
  initial credentials are the module constants `DEFAULT_ADMIN_USERNAME` and
  `DEFAULT_ADMIN_PASSWORD`. Change them after the first login.
- `log_level_for_mode(mode)` maps a run mode to a logging level.
  `"release"` gives `logging.WARNING`. Any other mode gives `logging.INFO`.

The record types are dataclasses: `User`, `Bridge`, `Drone`, `Defect` and
`Report`. `User.is_admin()` is true for the `"admin"` role.

## Repositories (`bridgeinspect.repositories`)

There is one repository per record type: `UserRepository`, `BridgeRepository`,
`DroneRepository`, `DefectRepository` and `ReportRepository`. Each one is built
from an open connection.

Creating and updating:

- `create` inserts a record, fills in its `id` and timestamps, and returns it.
- `update` saves all fields of a record.

Looking up:

- `find_by_id`, `find_by_code`, `find_by_username` and `find_by_email` return
  `None` when nothing matches.
- `ReportRepository.find_by_id` is the exception: it raises
  `RecordNotFoundError`. It also attaches the report's `user` and `bridge`.

Listing:

- `list(page, page_size)` and the `list_by_*` variants return a tuple of
  `(records, total)`.
- Bridges, drones and reports come newest first. Defects are ordered by
  detection time, newest first.

Deleting:

- Users, defects and reports are soft-deleted. A soft-deleted record is hidden
  from every lookup and listing.
- `BridgeRepository.delete(bridge_id)` appends `_deleted_<unix time>` to the
  bridge code, which frees the code for reuse. It then soft-deletes the bridge
  and returns it. If the bridge does not exist it raises `RecordNotFoundError`.
- `DroneRepository.delete` removes the row for good.

Defect listings:

- `DefectRepository.list(DefectListFilters(...))` filters by `bridge_id`,
  `defect_type`, `start_time` and `end_time`, and pages with `page` and
  `page_size`.
- When `current_user` is a non-admin, only defects on that user's bridges are
  listed.
- Defects returned by the repository carry their `bridge`.

Report listings:

- `ReportRepository.list` and `list_by_user_id` accept an optional
  `report_type` filter.
- `count_by_status(status)` counts reports in a given status.

## Files (`bridgeinspect.storage`)

```python
from bridgeinspect.storage import LocalFileStorage, UploadedFile

storage = LocalFileStorage("uploads")
upload = UploadedFile("bridge.obj", size=1024, content=b"...")
storage.validate_file_format(upload, [".obj", ".fbx", ".gltf", ".glb"])
storage.validate_file_size(upload, 50 * 1024 * 1024)
path = storage.save_uploaded_file(upload, "models")   # e.g. "models/<uuid>.obj"
```

Saving:

- `save_uploaded_file` and `save_image` store an upload under a fresh UUID
  name. The name keeps the upload's extension.
- `save_result_image(base64_data, directory)` decodes base64 data and writes it
  to a new `.jpg` file.
- Both return the path relative to the base directory.

Deleting:

- `delete_file(path)` returns `True` if a file was removed.
- It returns `False` if there was no file.

Checking:

- `validate_file_format` returns the extension. The comparison is
  case-sensitive, so `.OBJ` does not match `.obj`.
- `validate_file_size` returns the size. A file exactly at the limit passes.

A failed check or a failed file operation raises `FileStorageError`.

## Statistics (`bridgeinspect.stats`)

`StatsService(conn, cache=None, clock=datetime.now)` answers dashboard queries
for a user. Administrators see all data. Other users see only their own bridges
and what belongs to them.

- `get_overview(user)`
  - Returns a `StatsOverview`.
  - Counts bridges, drones, defects and distinct analysed images.
  - Counts today's and the last week's defects.
  - Compares today with yesterday, as a percentage and a direction of
    `"up"`, `"down"` or `"stable"`.
- `get_defect_type_distribution(user, days)`
  - Returns a `DefectTypeDistribution`.
  - Gives the count, average confidence and percentage for each type.
  - `days=0` means all time.
- `get_defect_trend(user, days, granularity)`
  - Returns a `DefectTrend`.
  - Gives daily counts with running totals, the average per day and the peak
    day.
  - `granularity` is echoed back in the result. The counts are always per day.
- `get_bridge_ranking(user, limit, order)`
  - Returns a `BridgeRanking`.
  - Bridges are ordered by defect count. `order="best"` puts the fewest first.
  - Each entry carries a health score and level.
- `get_recent_detections(user, limit)`
  - Returns `RecentDetections`, one entry per analysed image.
- `get_high_risk_alerts(user, severity, limit)`
  - Returns `HighRiskAlerts`: defects with confidence ≥ 0.85 or area ≥ 0.02.
  - `severity="urgent"` or `"serious"` narrows the list.

Results are cached per user and per set of arguments. The lifetimes are set in
`CACHE_TTL`, in seconds. You can pass your own `cachetools.TLRUCache` as
`cache`.

The scoring rules are plain functions:

- `calculate_health_score(defect_count, high_risk_count)` returns 100, minus 1
  per defect, minus 5 per high-risk defect, floored at 0.
- `health_level(score)` returns 优秀 (≥ 90), 良好 (≥ 70), 一般 (≥ 50),
  较差 (≥ 30) or 危险.
- `determine_severity(confidence, area)` returns:
  - 紧急 when confidence ≥ 0.95 and area ≥ 0.1;
  - 严重 when confidence ≥ 0.90 or area ≥ 0.05;
  - 高危 when confidence ≥ 0.85 or area ≥ 0.02;
  - 一般 otherwise.

## PDF reports (`bridgeinspect.report_generator`)

```python
from bridgeinspect.report_generator import ReportGenerator

pages = ReportGenerator("fonts/font.ttf").generate_bridge_inspection_report(
    report, bridge, defects, "inspection.pdf"
)
```

The report is written on A4 pages, in this order:

1. a cover page;
2. bridge information;
3. a detection overview with the health grade scale;
4. a pie chart of defect types and a line chart of defects per day;
5. a table of high-risk defects;
6. per-type defect details, which continue onto further pages as needed;
7. a conclusion chosen by the health score.

The method returns the number of pages.

Fonts:

- If a `wqy-microhei.ttc` file sits next to `font_path`, it is used first.
- Otherwise `font_path` itself is used.
- If loading fails, `fallback_font_path` is tried. Its default is the
  Liberation Sans path.
- With `font_path=None`, matplotlib's default font is used.

Failures raise `ReportGenerationError`.

These helpers are exposed on their own:

- `health_score_color`
- `assessment_for_score`
- `select_high_risk`
- `group_by_type`
- `count_by_date`

## What this package does not do

This package is a library only. It provides:

- no web server or HTTP API;
- no login, session or password-checking flow;
- no command-line program;
- no defect detection of its own.

Defects must be produced elsewhere and stored through `DefectRepository`.