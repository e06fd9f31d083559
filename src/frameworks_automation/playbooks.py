from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from .ansible import AnsibleTask, Handler, Play, Playbook

if TYPE_CHECKING:
    from .backends.base import TaskConfig

KAFKA_DEFAULT_VERSION = "3.7.1"
KAFKA_SCALA_VERSION = "2.13"
YUGABYTE_DEFAULT_VERSION = "2.20.1.0"
YUGABYTE_BUILD = "b97"


def _systemd_handlers(unit: str) -> list[Handler]:
    return [
        Handler("reload systemd", "systemd", {"daemon_reload": True}),
        Handler(f"restart {unit}", "systemd", {"name": unit, "state": "restarted"}),
    ]


def _enable(unit: str) -> AnsibleTask:
    return AnsibleTask(f"Enable {unit}", "systemd", {"name": unit, "enabled": True, "state": "started"})


def unit_file(description: str, exec_start: str, user: str = "root", env_file: str | None = None) -> str:
    lines = [
        "[Unit]",
        f"Description={description}",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        "Type=simple",
        f"User={user}",
    ]
    if env_file:
        lines.append(f"EnvironmentFile=-{env_file}")
    lines.extend([
        f"ExecStart={exec_start}",
        "Restart=always",
        "RestartSec=5",
        "LimitNOFILE=65536",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ])
    return "\n".join(lines)


def postgres_playbook(config: TaskConfig, hosts: str) -> Playbook:
    meta = config.metadata
    if meta.get("engine") == "yugabyte":
        return yugabyte_playbook(config, hosts)
    version = "" if config.version in ("latest", "stable") else config.version
    package = f"postgresql-{version}" if version else "postgresql"
    tasks = [
        AnsibleTask("Install PostgreSQL", "apt", {"name": [package, "python3-psycopg2"], "state": "present", "update_cache": True}),
        AnsibleTask(
            "Listen on all interfaces",
            "community.postgresql.postgresql_set",
            {"name": "listen_addresses", "value": "*"},
            notify=["restart postgresql"],
        ),
        AnsibleTask(
            "Set PostgreSQL port",
            "community.postgresql.postgresql_set",
            {"name": "port", "value": str(config.port)},
            notify=["restart postgresql"],
        ),
        _enable("postgresql"),
    ]
    if meta.get("password"):
        tasks.append(
            AnsibleTask(
                "Set superuser password",
                "community.postgresql.postgresql_user",
                {"name": meta.get("user", "postgres"), "password": meta["password"], "port": config.port},
            )
        )
    owners = sorted({db["owner"] for db in meta.get("databases", []) if db.get("owner")} - {meta.get("user", "postgres")})
    for owner in owners:
        tasks.append(AnsibleTask(f"Create role {owner}", "community.postgresql.postgresql_user", {"name": owner, "port": config.port}))
    for db in meta.get("databases", []):
        tasks.append(
            AnsibleTask(
                f"Create database {db['name']}",
                "community.postgresql.postgresql_db",
                {"name": db["name"], "owner": db.get("owner") or meta.get("user", "postgres"), "port": config.port},
            )
        )
    for task in tasks:
        if task.module.startswith("community.postgresql."):
            task.become_user = "postgres"
    play = Play(
        name="Install and configure PostgreSQL",
        hosts=hosts,
        tasks=tasks,
        handlers=[Handler("restart postgresql", "systemd", {"name": "postgresql", "state": "restarted"})],
    )
    return Playbook("Provision PostgreSQL", [play])


def yugabyte_playbook(config: TaskConfig, hosts: str) -> Playbook:
    version = YUGABYTE_DEFAULT_VERSION if config.version in ("latest", "stable") else config.version
    archive = f"yugabyte-{version}-{YUGABYTE_BUILD}-linux-x86_64.tar.gz"
    home = "/opt/yugabyte"
    unit = "frameworks-yugabyte"
    exec_start = (
        f"{home}/bin/yugabyted start --background=false --base_dir=/var/lib/yugabyte "
        f"--advertise_address={{{{ ansible_host }}}} --ysql_port={config.port}"
    )
    play = Play(
        name="Install and configure YugabyteDB",
        hosts=hosts,
        tasks=[
            AnsibleTask("Create install directory", "file", {"path": home, "state": "directory", "mode": "0755"}),
            AnsibleTask(
                "Download and unpack YugabyteDB",
                "unarchive",
                {
                    "src": f"https://downloads.yugabyte.com/releases/{version}/{archive}",
                    "dest": home,
                    "remote_src": True,
                    "extra_opts": ["--strip-components=1"],
                    "creates": f"{home}/bin/yugabyted",
                },
            ),
            AnsibleTask(
                "Write systemd unit",
                "copy",
                {"content": unit_file("Frameworks YugabyteDB", exec_start), "dest": f"/etc/systemd/system/{unit}.service", "mode": "0644"},
                notify=["reload systemd", f"restart {unit}"],
            ),
            _enable(unit),
        ],
        handlers=_systemd_handlers(unit),
    )
    return Playbook("Provision YugabyteDB", [play])


def zookeeper_playbook(config: TaskConfig, hosts: str) -> Playbook:
    meta = config.metadata
    zoo_cfg = "\n".join(
        [
            "tickTime=2000",
            "initLimit=10",
            "syncLimit=5",
            "dataDir=/var/lib/zookeeper",
            f"clientPort={config.port}",
            *meta.get("servers", []),
            "",
        ]
    )
    play = Play(
        name=f"Install and configure Zookeeper node {meta.get('server_id')}",
        hosts=hosts,
        tasks=[
            AnsibleTask("Install Zookeeper", "apt", {"name": "zookeeperd", "state": "present", "update_cache": True}),
            AnsibleTask(
                "Write myid",
                "copy",
                {"content": f"{meta.get('server_id')}\n", "dest": "/etc/zookeeper/conf/myid", "mode": "0644"},
                notify=["restart zookeeper"],
            ),
            AnsibleTask(
                "Write zoo.cfg",
                "copy",
                {"content": zoo_cfg, "dest": "/etc/zookeeper/conf/zoo.cfg", "mode": "0644"},
                notify=["restart zookeeper"],
            ),
            _enable("zookeeper"),
        ],
        handlers=[Handler("restart zookeeper", "systemd", {"name": "zookeeper", "state": "restarted"})],
    )
    return Playbook("Provision Zookeeper", [play])


def kafka_playbook(config: TaskConfig, hosts: str) -> Playbook:
    meta = config.metadata
    version = KAFKA_DEFAULT_VERSION if config.version in ("latest", "stable") else config.version
    archive = f"kafka_{KAFKA_SCALA_VERSION}-{version}.tgz"
    home = "/opt/kafka"
    unit = "frameworks-kafka"
    properties = "\n".join(
        [
            f"broker.id={meta.get('broker_id')}",
            f"listeners=PLAINTEXT://0.0.0.0:{config.port}",
            f"advertised.listeners=PLAINTEXT://{meta.get('advertised_host')}:{config.port}",
            f"zookeeper.connect={meta.get('zookeeper_connect')}",
            "log.dirs=/var/lib/kafka",
            "num.partitions=3",
            "auto.create.topics.enable=false",
            "",
        ]
    )
    tasks = [
        AnsibleTask("Install Java runtime", "apt", {"name": "openjdk-17-jre-headless", "state": "present", "update_cache": True}),
        AnsibleTask("Create install directory", "file", {"path": home, "state": "directory", "mode": "0755"}),
        AnsibleTask(
            "Download and unpack Kafka",
            "unarchive",
            {
                "src": f"https://archive.apache.org/dist/kafka/{version}/{archive}",
                "dest": home,
                "remote_src": True,
                "extra_opts": ["--strip-components=1"],
                "creates": f"{home}/bin/kafka-server-start.sh",
            },
        ),
        AnsibleTask("Create log directory", "file", {"path": "/var/lib/kafka", "state": "directory", "mode": "0750"}),
        AnsibleTask(
            "Write server.properties",
            "copy",
            {"content": properties, "dest": f"{home}/config/server.properties", "mode": "0644"},
            notify=[f"restart {unit}"],
        ),
        AnsibleTask(
            "Write systemd unit",
            "copy",
            {
                "content": unit_file(
                    f"Frameworks Kafka broker {meta.get('broker_id')}",
                    f"{home}/bin/kafka-server-start.sh {home}/config/server.properties",
                ),
                "dest": f"/etc/systemd/system/{unit}.service",
                "mode": "0644",
            },
            notify=["reload systemd", f"restart {unit}"],
        ),
        _enable(unit),
    ]
    for topic in meta.get("topics", []):
        tasks.append(
            AnsibleTask(
                f"Ensure topic {topic}",
                "command",
                {
                    "cmd": f"{home}/bin/kafka-topics.sh --bootstrap-server localhost:{config.port} "
                    f"--create --if-not-exists --topic {topic}",
                },
                tags=["topics"],
            )
        )
    play = Play(name="Install and configure Kafka", hosts=hosts, tasks=tasks, handlers=_systemd_handlers(unit))
    return Playbook("Provision Kafka", [play])


def clickhouse_playbook(config: TaskConfig, hosts: str) -> Playbook:
    meta = config.metadata
    listen = (
        "<clickhouse>\n"
        "  <listen_host>0.0.0.0</listen_host>\n"
        f"  <tcp_port>{config.port}</tcp_port>\n"
        f"  <http_port>{meta.get('http_port', 8123)}</http_port>\n"
        "</clickhouse>\n"
    )
    package = "clickhouse-server" if config.version in ("latest", "stable") else f"clickhouse-server={config.version}"
    tasks = [
        AnsibleTask(
            "Add ClickHouse repository",
            "apt_repository",
            {"repo": "deb https://packages.clickhouse.com/deb stable main", "state": "present", "filename": "clickhouse"},
        ),
        AnsibleTask(
            "Install ClickHouse",
            "apt",
            {"name": [package, "clickhouse-client"], "state": "present", "update_cache": True},
        ),
        AnsibleTask(
            "Write listen configuration",
            "copy",
            {"content": listen, "dest": "/etc/clickhouse-server/config.d/listen.xml", "mode": "0644"},
            notify=["restart clickhouse-server"],
        ),
        _enable("clickhouse-server"),
    ]
    if meta.get("database") and meta["database"] != "default":
        tasks.append(
            AnsibleTask(
                f"Create database {meta['database']}",
                "command",
                {"cmd": f"clickhouse-client --port {config.port} --query \"CREATE DATABASE IF NOT EXISTS {meta['database']}\""},
            )
        )
    play = Play(
        name="Install and configure ClickHouse",
        hosts=hosts,
        tasks=tasks,
        handlers=[Handler("restart clickhouse-server", "systemd", {"name": "clickhouse-server", "state": "restarted"})],
    )
    return Playbook("Provision ClickHouse", [play])


def redis_playbook(config: TaskConfig, hosts: str) -> Playbook:
    meta = config.metadata
    name = meta.get("instance") or config.name
    unit = f"frameworks-redis-{name}"
    conf_path = f"/etc/redis/redis-{name}.conf"
    data_dir = f"/var/lib/redis-{name}"
    lines = [f"port {config.port}", "bind 0.0.0.0", "appendonly yes", "daemonize no", f"dir {data_dir}"]
    if meta.get("password"):
        lines.append(f"requirepass {meta['password']}")
    play = Play(
        name=f"Install and configure Redis instance {name}",
        hosts=hosts,
        tasks=[
            AnsibleTask(
                "Install Redis server",
                "apt",
                {"name": "redis-server", "state": "present", "update_cache": True, "cache_valid_time": 3600},
            ),
            AnsibleTask(
                "Create Redis data directory",
                "file",
                {"path": data_dir, "state": "directory", "owner": "redis", "group": "redis", "mode": "0750"},
            ),
            AnsibleTask(
                "Write Redis configuration",
                "copy",
                {"content": "\n".join(lines) + "\n", "dest": conf_path, "owner": "redis", "group": "redis", "mode": "0640"},
                notify=[f"restart {unit}"],
            ),
            AnsibleTask(
                "Create systemd unit for Redis",
                "copy",
                {
                    "content": unit_file(f"Frameworks Redis ({name})", f"/usr/bin/redis-server {conf_path}", user="redis"),
                    "dest": f"/etc/systemd/system/{unit}.service",
                    "mode": "0644",
                },
                notify=["reload systemd", f"restart {unit}"],
            ),
            _enable(unit),
        ],
        handlers=_systemd_handlers(unit),
    )
    return Playbook("Provision Redis", [play])


def native_service_playbook(config: TaskConfig, hosts: str) -> Playbook:
    """Binary download plus systemd unit for a platform service."""
    service = config.deploy_name or config.type
    unit = f"frameworks-{service}"
    home = f"/opt/frameworks/{service}"
    binary = f"{home}/{service}"
    url = config.binary_url
    if not url:
        raise ValueError(f"native mode for {config.name} requires binary_url")
    env_file = config.env_file or f"/etc/frameworks/{service}.env"
    play = Play(
        name=f"Install {service} ({config.version})",
        hosts=hosts,
        tasks=[
            AnsibleTask("Create service directory", "file", {"path": home, "state": "directory", "mode": "0755"}),
            AnsibleTask(
                f"Download {service} binary",
                "get_url",
                {"url": url, "dest": binary, "mode": "0755", "force": True},
                notify=[f"restart {unit}"],
            ),
            AnsibleTask(
                "Write systemd unit",
                "copy",
                {
                    "content": unit_file(f"Frameworks {service}", binary, env_file=env_file),
                    "dest": f"/etc/systemd/system/{unit}.service",
                    "mode": "0644",
                },
                notify=["reload systemd", f"restart {unit}"],
            ),
            _enable(unit),
        ],
        handlers=_systemd_handlers(unit),
    )
    return Playbook(f"Provision {service}", [play])


PLAYBOOK_BUILDERS: dict[str, Callable[[TaskConfig, str], Playbook]] = {
    "postgres": postgres_playbook,
    "zookeeper": zookeeper_playbook,
    "kafka": kafka_playbook,
    "clickhouse": clickhouse_playbook,
    "redis": redis_playbook,
}


def playbook_for(config: TaskConfig, hosts: str) -> Playbook:
    builder = PLAYBOOK_BUILDERS.get(config.type, native_service_playbook)
    return builder(config, hosts)
