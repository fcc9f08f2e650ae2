"""Pydantic models for orchestration runs and MCP tool parameters."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

VariantName = Literal[
    "install",
    "uninstall",
    "run",
    "just-run",
    "test",
    "just-test",
    "reset-simulator",
]

ANDROID_TARGETS = ("android",)
SIMULATOR_TARGETS = (
    "ios-simulator",
    "tvos-simulator",
    "watchos-simulator",
)


class OrchestrationRun(BaseModel):
    """Everything one orchestrator invocation needs to know."""

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "target": "android",
                    "app_path": "bin/MyTests.apk",
                    "app_id": "net.example.mytests",
                    "device_arch": "arm64-v8a",
                    "timeout": 900,
                },
                {
                    "target": "ios-simulator",
                    "os_version": "17.0",
                    "app_path": "bin/MyTests.app",
                    "app_id": "net.example.MyTests",
                    "launch_timeout": 120,
                    "reset_simulator": True,
                },
            ]
        }
    )

    target: str = Field(
        default="android",
        description="Platform selector: android, ios-simulator, tvos-simulator, watchos-simulator",
    )
    os_version: Optional[str] = Field(default=None, description="Required OS version")
    device_name: Optional[str] = Field(
        default=None, description="Device name or UDID/serial (case-insensitive)"
    )
    device_arch: Optional[str] = Field(
        default=None, description="Required device architecture (e.g. x86_64, arm64-v8a)"
    )
    api_level: Optional[int] = Field(default=None, description="Required Android API level")
    app_path: Optional[str] = Field(default=None, description="Path to the .apk or .app")
    app_id: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Package name or bundle identifier (not needed for reset-simulator)",
    )
    instrumentation: Optional[str] = Field(
        default=None, description="Android instrumentation class name"
    )
    timeout: float = Field(default=900.0, description="Overall run timeout in seconds")
    launch_timeout: Optional[float] = Field(
        default=300.0,
        description="Time allowed before execution visibly starts, in seconds",
    )
    reset_simulator: bool = Field(
        default=False, description="Erase the simulator/emulator before and after the run"
    )
    enable_lldb: bool = Field(default=False, description="Run the app under lldb")
    expected_exit_code: int = Field(default=0, description="Exit code counted as success")
    env: Dict[str, str] = Field(
        default_factory=dict, description="Environment variables for the app"
    )
    app_arguments: List[str] = Field(
        default_factory=list, description="Arguments passed through to the app"
    )
    instrumentation_args: Dict[str, str] = Field(
        default_factory=dict, description="Android instrumentation arguments (-e key value)"
    )
    output_directory: Optional[str] = Field(
        default=None, description="Directory for logs and results"
    )
    skipped_methods: List[str] = Field(default_factory=list)
    skipped_classes: List[str] = Field(default_factory=list)
    xml_version: str = Field(default="xUnit", description="Result document format")

    @property
    def is_android(self) -> bool:
        return self.target.lower() in ANDROID_TARGETS


class OrchestrationParams(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "variant": "test",
                    "run": {
                        "target": "android",
                        "app_path": "bin/MyTests.apk",
                        "app_id": "net.example.mytests",
                    },
                },
                {
                    "variant": "just-run",
                    "run": {"target": "ios-simulator", "app_id": "net.example.App"},
                },
            ]
        }
    )
    variant: VariantName = Field(description="Command variant to orchestrate")
    run: OrchestrationRun = Field(description="Run description")


class DeviceListParams(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"target": "android"},
                {"target": "ios-simulator", "os_version": "17.0"},
            ]
        }
    )
    target: str = Field(default="android", description="Platform selector")
    os_version: Optional[str] = Field(default=None, description="Filter by OS version")
    include_unusable: bool = Field(
        default=False, description="Also list locked/offline devices"
    )


class LogWindowParams(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"log_directory": "logs/run-20240101_120000_000000", "max_lines": 100},
            ]
        }
    )
    log_directory: str = Field(description="Run log directory returned by run_orchestration")
    log_name: str = Field(default="system.log", description="File inside the run directory")
    max_lines: int = Field(default=200, description="Maximum trailing lines to return")


class ClassifyLogParams(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"log_path": "logs/run-20240101_120000_000000/execution.log", "stage": "install"},
            ]
        }
    )
    log_path: str = Field(description="Log file to scan")
    stage: Literal["install", "run", "test"] = Field(
        default="test", description="Which known-failure map to use"
    )


class ExitCodeParams(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "log_path": "logs/run-20240101_120000_000000/system.log",
                    "app_id": "net.example.MyApp",
                    "label_style": "uikit",
                },
            ]
        }
    )
    log_path: str = Field(description="Captured system log to scan")
    app_id: str = Field(min_length=1, description="Bundle identifier of the app")
    label_style: Literal["generic", "uikit", "catalyst"] = Field(
        default="uikit",
        description="How launchd labels the app: uikit (iOS/tvOS), catalyst, or generic",
    )
