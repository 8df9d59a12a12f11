"""
Scorekeeper Global Constants

Centralized location for store identifiers, storage keys and other
system-wide constants used across the cache layer.
"""

from datetime import datetime, timezone


# Timestamp Functions
def get_current_timestamp() -> datetime:
    """Get current timestamp with UTC timezone.

    Returns:
        datetime: Current UTC timestamp
    """
    return datetime.now(timezone.utc)


# Application Constants
APP_NAME = "Scorekeeper Cache"
APP_VERSION = "0.1.0"

# Relationship stores
JUDGES_BY_CLUSTER = "judges_by_cluster"
TEAMS_BY_CLUSTER = "teams_by_cluster"
CLUSTERS_BY_CONTEST = "clusters_by_contest"
CONTEST_BY_TEAM = "contest_by_team"
TEAMS_BY_CONTEST = "teams_by_contest"
COACH_BY_TEAM = "coach_by_team"
AWARD_BY_TEAM = "award_by_team"
JUDGES_BY_CONTEST = "judges_by_contest"
CONTEST_BY_JUDGE = "contest_by_judge"
ORGANIZERS_BY_CONTEST = "organizers_by_contest"
SCORESHEET_BY_KEY = "scoresheet_by_key"
SUBMISSION_STATUS_BY_CLUSTER = "submission_status_by_cluster"
RANKINGS_BY_CONTEST = "rankings_by_contest"
TEAM_ROSTER_BY_COACH = "team_roster_by_coach"
FEEDBACK_SETTINGS_BY_CONTEST = "feedback_settings_by_contest"

# Primary entity stores
JUDGE = "judge"
TEAM = "team"
CLUSTER = "cluster"
CONTEST = "contest"
SCORESHEET = "scoresheet"

# Browser-style storage keys backing each persisted store
STORAGE_KEYS = {
    JUDGES_BY_CLUSTER: "map-cluster-judge-storage",
    TEAMS_BY_CLUSTER: "map-cluster-team-storage",
    CLUSTERS_BY_CONTEST: "map-cluster-contest-storage",
    CONTEST_BY_TEAM: "map-contest-to-team-storage",
    TEAMS_BY_CONTEST: "map-teams-by-contest-storage",
    COACH_BY_TEAM: "map-coach-team-storage",
    AWARD_BY_TEAM: "special-award-storage",
    JUDGES_BY_CONTEST: "map-contest-judge-storage",
    CONTEST_BY_JUDGE: "map-judge-contest-storage",
    ORGANIZERS_BY_CONTEST: "contest-organizer-storage",
    SCORESHEET_BY_KEY: "map-score-sheet-storage",
    SUBMISSION_STATUS_BY_CLUSTER: "submission-status-storage",
    RANKINGS_BY_CONTEST: "rankings-storage",
    TEAM_ROSTER_BY_COACH: "team-roster-storage",
    FEEDBACK_SETTINGS_BY_CONTEST: "feedback-control-storage",
    JUDGE: "judge-storage",
    TEAM: "team-storage",
    CLUSTER: "cluster-storage",
    CONTEST: "contest-storage",
    SCORESHEET: "score-sheet-storage",
}

# Scoresheet types used in composite scoresheet keys
SHEET_TYPE_JOURNAL = 1
SHEET_TYPE_PRESENTATION = 2
SHEET_TYPE_MACHINE_DESIGN = 3
SHEET_TYPE_RUN_PENALTIES = 4
SHEET_TYPE_GENERAL_PENALTIES = 5
SHEET_TYPE_REDESIGN = 6
SHEET_TYPE_CHAMPIONSHIP = 7

# Persisted record format
DEFAULT_RECORD_VERSION = 0
CACHE_KEY_SEPARATOR = "-"
