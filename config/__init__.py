import os
import json
from pathlib import Path
from dotenv import load_dotenv
from .logging_config import setup_app_logging
import logging

# Load environment variables from .env file
load_dotenv()

# Get the config directory path (where this file is located)
CONFIG_DIR = Path(__file__).parent
PROJECT_ROOT = CONFIG_DIR.parent
PROMPTS_DIR = CONFIG_DIR / 'prompts'

# Load configuration from config.json
config_path = CONFIG_DIR / 'config.json'
with open(config_path, 'r', encoding='utf-8') as f:
    CONFIG = json.load(f)

CONFIG['project_root'] = str(PROJECT_ROOT)

# --- System Prompt Loading ---
# One template per conversation mode plus the classification template.
# Mode prompts are required; a missing file is a deployment error.
PROMPT_FILES = {
    'consult': 'consult_system_prompt.txt',
    'smalltalk': 'smalltalk_system_prompt.txt',
    'meta': 'meta_system_prompt.txt',
    'classification': 'classification_system_prompt.txt',
}

CONFIG['prompts'] = {}
for prompt_name, file_name in PROMPT_FILES.items():
    prompt_path = PROMPTS_DIR / file_name
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            CONFIG['prompts'][prompt_name] = f.read().strip()
    except FileNotFoundError:
        raise FileNotFoundError(
            f"System prompt file not found: {prompt_path}\n"
            f"Please ensure {file_name} exists in the config/prompts directory."
        )


def validate_config():
    """Validate that all required configuration sections are present.

    API keys are not checked here: the provider layer validates them when an
    LLM client is built, so the package stays importable in tests and tools.
    """
    required_sections = ['llm', 'database', 'agent_state', 'steering', 'composition']
    for section in required_sections:
        if section not in CONFIG:
            raise ValueError(f"Missing configuration section: {section}")

    required_models = ['classification', 'generation']
    for model in required_models:
        if model not in CONFIG['llm'].get('models', {}):
            raise ValueError(f"Missing configuration for LLM model: {model}")


# Validate configuration on module import
validate_config()


# --- Helper function to get config value from CONFIG or environment variable ---
def get_config_value(json_keys: list, env_var_name: str, default_value: any = None):
    """
    Retrieves a configuration value.
    Priority:
    1. Environment variable (if env_var_name is provided and variable is set).
    2. Value from CONFIG dictionary (using json_keys).
    3. default_value.
    """
    if env_var_name:
        env_value = os.getenv(env_var_name)
        if env_value is not None:
            # Attempt to match type of default_value if it's bool, int or float
            if isinstance(default_value, bool):
                if env_value.lower() == 'true': return True
                if env_value.lower() == 'false': return False
            elif isinstance(default_value, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass  # Fall through to JSON or default if not a valid int
            elif isinstance(default_value, float):
                try:
                    return float(env_value)
                except ValueError:
                    pass
            return env_value

    current_level = CONFIG
    try:
        for key in json_keys:
            current_level = current_level[key]
        if isinstance(current_level, (str, int, bool, float, list, dict)):
            return current_level
    except (KeyError, TypeError):
        pass  # Key not found, fall through to default

    return default_value


# --- Environment overrides for runtime settings ---
CONFIG['database']['path'] = get_config_value(
    ['database', 'path'], 'DATABASE_PATH', 'data/conversations.sqlite'
)
if not os.path.isabs(CONFIG['database']['path']):
    CONFIG['database']['path'] = str(PROJECT_ROOT / CONFIG['database']['path'])

CONFIG.setdefault('context', {})
CONFIG['context']['message_limit'] = get_config_value(
    ['context', 'message_limit'], 'CONTEXT_MESSAGE_LIMIT', 10
)
CONFIG['agent_state']['default_ttl_seconds'] = get_config_value(
    ['agent_state', 'default_ttl_seconds'], 'AGENT_STATE_TTL_SECONDS', 300
)
CONFIG['agent_state']['sweep_interval_seconds'] = get_config_value(
    ['agent_state', 'sweep_interval_seconds'], 'AGENT_STATE_SWEEP_INTERVAL_SECONDS', 300
)
CONFIG['llm']['provider'] = get_config_value(['llm', 'provider'], 'LLM_PROVIDER', 'openai')
CONFIG['llm']['models']['generation']['name'] = get_config_value(
    ['llm', 'models', 'generation', 'name'], 'LLM_MODEL', 'gpt-4o'
)
CONFIG['llm']['timeout'] = get_config_value(['llm', 'timeout'], 'LLM_TIMEOUT', 30)

# --- Logging Configuration ---
CONFIG['logging'] = {
    'level': get_config_value(['logging', 'level'], 'LOG_LEVEL', 'INFO'),
    'file_path': get_config_value(['logging', 'file_path'], 'LOG_FILE_PATH', 'logs/orchestrator.log'),
    'max_bytes': get_config_value(['logging', 'max_bytes'], 'LOG_MAX_BYTES', 5*1024*1024),  # 5MB
    'backup_count': get_config_value(['logging', 'backup_count'], 'LOG_BACKUP_COUNT', 3),
    'date_format': get_config_value(
        ['logging', 'date_format'],
        'LOG_DATE_FORMAT',
        '%Y-%m-%d %H:%M:%S'
    )
}

# --- Setup Application Logging ---
setup_app_logging(config=CONFIG.get('logging'))

config_init_logger = logging.getLogger(__name__)
config_init_logger.info("[config_init] Logging initialized from config/__init__.py using setup_app_logging.")
