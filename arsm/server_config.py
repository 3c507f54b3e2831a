"""
ARSM - Dedicated Server config.json
=====================================
Read and write the game server's own configuration file
(<server_path>/config.json).

When the file does not exist yet, the default preset or a default
configuration mirroring the layout the server expects is returned, so the
editor always has something to show. Unknown keys are preserved on save.

Presets are named config documents kept in <server_path>/presets/*.json.
"""

import os
import json
import tempfile

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from arsm.errors import InvalidInput, IOFailure, NotFound


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class A2SConfig(_Section):
    address: str = ""
    port: int = 17777


class RconConfig(_Section):
    address: str = ""
    port: int = 19999
    password: str = ""
    permission: str = "admin"
    blacklist: list[str] = Field(default_factory=list)
    whitelist: list[str] = Field(default_factory=list)


class GameProperties(_Section):
    serverMaxViewDistance: int = 2500
    serverMinGrassDistance: int = 50
    networkViewDistance: int = 1500
    disableThirdPerson: bool = False
    fastValidation: bool = True
    battlEye: bool = True
    VONDisableUI: bool = False
    VONDisableDirectSpeechUI: bool = False
    VONCanTransmitCrossFaction: bool = False


class ModEntry(_Section):
    modId: str
    name: str = ""
    version: str = ""


class GameConfig(_Section):
    name: str = "Arma Reforger Server"
    password: str = ""
    passwordAdmin: str = ""
    admins: list[str] = Field(default_factory=list)
    scenarioId: str = "{ECC61978EDCC2B5A}Missions/23_Campaign.conf"
    maxPlayers: int = 64
    visible: bool = True
    crossPlatform: bool = False
    supportedPlatforms: list[str] = Field(default_factory=lambda: ["PLATFORM_PC"])
    gameProperties: GameProperties = Field(default_factory=GameProperties)
    mods: list[ModEntry] = Field(default_factory=list)


class JoinQueue(_Section):
    maxSize: int = 64


class OperatingConfig(_Section):
    lobbyPlayerSynchronise: bool = True
    joinQueue: JoinQueue = Field(default_factory=JoinQueue)


class ServerConfig(_Section):
    bindAddress: str = ""
    bindPort: int = 2001
    publicAddress: str = ""
    publicPort: int = 2001
    a2s: A2SConfig = Field(default_factory=A2SConfig)
    rcon: RconConfig | None = Field(default_factory=RconConfig)
    game: GameConfig = Field(default_factory=GameConfig)
    operating: OperatingConfig = Field(default_factory=OperatingConfig)


class Scenario(BaseModel):
    id: str
    name: str
    map: str
    mode: str


def _scenario(scenario_id: str, name: str, map_name: str, mode: str) -> Scenario:
    return Scenario(id=scenario_id, name=name, map=map_name, mode=mode)


# Scenarios shipped with the base game, for the scenario picker
OFFICIAL_SCENARIOS = [
    _scenario("{ECC61978EDCC2B5A}Missions/23_Campaign.conf", "Conflict - Everon", "Everon", "Conflict"),
    _scenario("{C41618FD18E9D714}Missions/23_Campaign_Arland.conf", "Conflict - Arland", "Arland", "Conflict"),
    _scenario("{C700DB41F0C546E1}Missions/23_Campaign_NorthCentral.conf", "Conflict - Northern Everon", "Everon", "Conflict"),
    _scenario("{28802845ADA64D52}Missions/23_Campaign_SWCoast.conf", "Conflict - Southern Everon", "Everon", "Conflict"),
    _scenario("{94992A3D7CE4FF8A}Missions/23_Campaign_Western.conf", "Conflict - Western Everon", "Everon", "Conflict"),
    _scenario("{FDE33AFE2ED7875B}Missions/23_Campaign_Montignac.conf", "Conflict - Montignac", "Everon", "Conflict"),
    _scenario("{0220741028718E7F}Missions/23_Campaign_HQC_Everon.conf", "Conflict: HQ Commander - Everon", "Everon", "Conflict"),
    _scenario("{68D1240A11492545}Missions/23_Campaign_HQC_Arland.conf", "Conflict: HQ Commander - Arland", "Arland", "Conflict"),
    _scenario("{BB5345C22DD2B655}Missions/23_Campaign_HQC_Cain.conf", "Conflict: HQ Commander - Kolguyev", "Kolguyev", "Conflict"),
    _scenario("{59AD59368755F41A}Missions/21_GM_Eden.conf", "Game Master - Everon", "Everon", "Game Master"),
    _scenario("{2BBBE828037C6F4B}Missions/22_GM_Arland.conf", "Game Master - Arland", "Arland", "Game Master"),
    _scenario("{F45C6C15D31252E6}Missions/27_GM_Cain.conf", "Game Master - Kolguyev", "Kolguyev", "Game Master"),
    _scenario("{DAA03C6E6099D50F}Missions/24_CombatOps.conf", "Combat Ops - Arland", "Arland", "Combat Ops"),
    _scenario("{DFAC5FABD11F2390}Missions/26_CombatOpsEveron.conf", "Combat Ops - Everon", "Everon", "Combat Ops"),
    _scenario("{CB347F2F10065C9C}Missions/CombatOpsCain.conf", "Combat Ops - Kolguyev", "Kolguyev", "Combat Ops"),
    _scenario("{3F2E005F43DBD2F8}Missions/CAH_Briars_Coast.conf", "Capture & Hold - Briars", "Everon", "Capture & Hold"),
    _scenario("{F1A1BEA67132113E}Missions/CAH_Castle.conf", "Capture & Hold - Montfort Castle", "Everon", "Capture & Hold"),
    _scenario("{589945FB9FA7B97D}Missions/CAH_Concrete_Plant.conf", "Capture & Hold - Concrete Plant", "Everon", "Capture & Hold"),
    _scenario("{9405201CBD22A30C}Missions/CAH_Factory.conf", "Capture & Hold - Almara Factory", "Everon", "Capture & Hold"),
    _scenario("{1CD06B409C6FAE56}Missions/CAH_Forest.conf", "Capture & Hold - Simon's Wood", "Everon", "Capture & Hold"),
    _scenario("{7C491B1FCC0FF0E1}Missions/CAH_LeMoule.conf", "Capture & Hold - Le Moule", "Everon", "Capture & Hold"),
    _scenario("{6EA2E454519E5869}Missions/CAH_Military_Base.conf", "Capture & Hold - Camp Blake", "Everon", "Capture & Hold"),
    _scenario("{2B4183DF23E88249}Missions/CAH_Morton.conf", "Capture & Hold - Morton", "Everon", "Capture & Hold"),
    _scenario("{002AF7323E0129AF}Missions/Tutorial.conf", "Training", "Arland", "Tutorial"),
    _scenario("{C47A1A6245A13B26}Missions/SP01_ReginaV2.conf", "Elimination", "Arland", "Singleplayer"),
    _scenario("{0648CDB32D6B02B3}Missions/SP02_AirSupport.conf", "Air Support", "Arland", "Singleplayer"),
    _scenario("{10B8582BAD9F7040}Missions/Scenario01_Intro.conf", "Operation Omega 01: Over The Hills And Far Away", "Kolguyev", "Campaign"),
    _scenario("{1D76AF6DC4DF0577}Missions/Scenario02_Steal.conf", "Operation Omega 02: Radio Check", "Kolguyev", "Campaign"),
    _scenario("{D1647575BCEA5A05}Missions/Scenario03_Villa.conf", "Operation Omega 03: Light In The Dark", "Kolguyev", "Campaign"),
    _scenario("{6D224A109B973DD8}Missions/Scenario04_Sabotage.conf", "Operation Omega 04: Red Silence", "Kolguyev", "Campaign"),
    _scenario("{FA2AB0181129CB16}Missions/Scenario05_Hill.conf", "Operation Omega 05: Cliffhanger", "Kolguyev", "Campaign"),
]


def default_server_config() -> dict:
    return ServerConfig().model_dump(exclude_none=True)


def load_server_config(path: str, presets_dir: str | None = None, default_preset: str = "") -> dict:
    """
    Return the parsed config.json.

    When the file does not exist yet, the default preset (if one is set
    and exists) is returned, otherwise the built-in defaults.

    Raises:
        IOFailure: The file exists but cannot be read or parsed.
    """
    if not os.path.exists(path):
        if presets_dir and default_preset:
            try:
                return load_preset(presets_dir, default_preset)
            except (NotFound, InvalidInput):
                pass
        return default_server_config()
    return _read_json(path, "server config")


def validate_server_config(data: dict) -> dict:
    """
    Check a config document and return it normalized.

    An empty RCON password removes the "rcon" section (RCON disabled).

    Raises:
        InvalidInput: The document does not match the expected layout, or
                      the RCON password is too short / contains spaces.
    """
    try:
        config = ServerConfig.model_validate(data)
    except ValidationError as e:
        raise InvalidInput(f"Invalid server config: {e.errors()[0]['msg']}") from e

    if config.rcon is not None:
        password = config.rcon.password
        if not password:
            config.rcon = None
        elif len(password) < 3 or " " in password:
            raise InvalidInput("RCON password must be at least 3 characters and contain no spaces")

    return config.model_dump(exclude_none=True)


def save_server_config(path: str, data: dict) -> dict:
    """
    Validate and write config.json. Returns the saved document.

    Raises:
        InvalidInput: See validate_server_config().
        IOFailure:    The file could not be written.
    """
    document = validate_server_config(data)
    _write_json(path, document, "server config")
    return document


# -- Presets -------------------------------------------------------------------

def _preset_path(presets_dir: str, name: str) -> str:
    name = name.strip()
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise InvalidInput("Invalid preset name")
    return os.path.join(presets_dir, name + ".json")


def list_presets(presets_dir: str) -> list[str]:
    """Names of the saved presets, sorted."""
    try:
        entries = os.listdir(presets_dir)
    except OSError:
        return []
    return sorted(
        name[:-len(".json")]
        for name in entries
        if name.endswith(".json") and os.path.isfile(os.path.join(presets_dir, name))
    )


def load_preset(presets_dir: str, name: str) -> dict:
    path = _preset_path(presets_dir, name)
    if not os.path.isfile(path):
        raise NotFound("Preset not found")
    return _read_json(path, "preset")


def save_preset(presets_dir: str, name: str, data: dict) -> dict:
    """Validate a config document and store it under ``name``."""
    path = _preset_path(presets_dir, name)
    document = validate_server_config(data)
    _write_json(path, document, "preset")
    return document


def delete_preset(presets_dir: str, name: str) -> None:
    path = _preset_path(presets_dir, name)
    try:
        os.remove(path)
    except FileNotFoundError:
        raise NotFound("Preset not found") from None
    except OSError as e:
        raise IOFailure(f"Failed to delete preset: {e}") from e


# -- File helpers --------------------------------------------------------------

def _read_json(path: str, what: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise IOFailure(f"Failed to parse {what}: {e}") from e


def _write_json(path: str, document: dict, what: str) -> None:
    """Atomically replace ``path`` with the document, indented like the game's own file."""
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=directory)
    except OSError as e:
        raise IOFailure(f"Failed to save {what}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=4, ensure_ascii=False)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise IOFailure(f"Failed to save {what}: {e}") from e
