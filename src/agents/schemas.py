"""
Structured-output schemas for the agents.

One schema per output kind, versioned together. The model provider is asked
to conform to these shapes; the parser still validates every response
independently. Keep `required` lists in step with the models in state.py.
"""

SCHEMA_VERSION = "2"

_STRING = {"type": "string"}
_NUMBER = {"type": "number"}
_STRING_LIST = {"type": "array", "items": _STRING}
_LIMBS = {"type": "array", "items": {"type": "string", "enum": ["Left Leg", "Right Leg"]}}
_DOMAIN = {"type": "string", "enum": ["range", "symmetry", "power", "control", "timing"]}
_SEVERITY = {"type": "string", "enum": ["high", "moderate", "low"]}


PATTERN_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "type": {
            "type": "string",
            "enum": [
                "threshold_violation",
                "asymmetry",
                "cross_metric_correlation",
                "temporal_pattern",
                "quality_flag",
            ],
        },
        "metrics": _STRING_LIST,
        "severity": _SEVERITY,
        "description": _STRING,
        "limbs": _LIMBS,
        "searchTerms": _STRING_LIST,
        "benchmarkCategory": {"type": "string", "enum": ["optimal", "average", "deficient"]},
    },
    "required": ["id", "type", "metrics", "severity", "description", "searchTerms"],
}

DECOMPOSITION_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {"patterns": {"type": "array", "items": PATTERN_SCHEMA}},
    "required": ["patterns"],
}

EVIDENCE_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "patternId": _STRING,
        "tier": {"type": "string", "enum": ["S", "A", "B", "C", "D"]},
        "sourceType": {"type": "string", "enum": ["web_search", "embedded_knowledge"]},
        "citation": _STRING,
        "url": _STRING,
        "findings": _STRING_LIST,
        "relevanceScore": _NUMBER,
    },
    "required": ["patternId", "tier", "citation", "findings"],
}

# evidenceByPattern is keyed by pattern id, so it is emitted as a list of
# {patternId, evidence} groups and folded back into a mapping by the parser.
RESEARCH_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "evidenceByPattern": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "patternId": _STRING,
                    "evidence": {"type": "array", "items": EVIDENCE_SCHEMA},
                },
                "required": ["patternId", "evidence"],
            },
        },
        "insufficientEvidence": _STRING_LIST,
    },
    "required": ["evidenceByPattern"],
}

INSIGHT_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "domain": _DOMAIN,
        "classification": {"type": "string", "enum": ["strength", "weakness"]},
        "title": _STRING,
        "content": _STRING,
        "limbs": _LIMBS,
        "evidence": _STRING_LIST,
        "patternIds": _STRING_LIST,
        "percentile": _NUMBER,
        "recommendations": _STRING_LIST,
    },
    "required": ["id", "domain", "classification", "title", "content", "evidence"],
}

CORRELATIVE_INSIGHT_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "primaryInsightId": _STRING,
        "relatedInsightIds": _STRING_LIST,
        "explanation": _STRING,
        "significance": _SEVERITY,
    },
    "required": ["id", "primaryInsightId", "relatedInsightIds", "explanation"],
}

BENCHMARK_SCHEMA = {
    "type": "object",
    "properties": {
        "metricName": _STRING,
        "displayName": _STRING,
        "domain": _DOMAIN,
        "value": _NUMBER,
        "percentile": _NUMBER,
        "category": {"type": "string", "enum": ["optimal", "average", "deficient"]},
        "classification": {"type": "string", "enum": ["strength", "weakness"]},
        "limb": {"type": "string", "enum": ["Left Leg", "Right Leg"]},
    },
    "required": ["metricName", "value", "percentile", "category", "classification"],
}

ANALYSIS_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "insights": {"type": "array", "items": INSIGHT_SCHEMA},
        "correlativeInsights": {"type": "array", "items": CORRELATIVE_INSIGHT_SCHEMA},
        "benchmarks": {"type": "array", "items": BENCHMARK_SCHEMA},
        "summary": _STRING,
        "strengths": _STRING_LIST,
        "weaknesses": _STRING_LIST,
    },
    "required": ["insights", "correlativeInsights", "summary", "strengths", "weaknesses"],
}

TREND_SCHEMA = {
    "type": "object",
    "properties": {
        "metricName": _STRING,
        "displayName": _STRING,
        "domain": _DOMAIN,
        "trend": {"type": "string", "enum": ["improving", "stable", "declining"]},
        "currentValue": _NUMBER,
        "previousValue": _NUMBER,
        "baselineValue": _NUMBER,
        "changeFromPrevious": _NUMBER,
        "changeFromBaseline": _NUMBER,
        "isClinicallyMeaningful": {"type": "boolean"},
        "limb": {"type": "string", "enum": ["Left Leg", "Right Leg"]},
    },
    "required": ["metricName", "trend", "currentValue"],
}

MILESTONE_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "type": {
            "type": "string",
            "enum": [
                "threshold_achieved",
                "mcid_improvement",
                "streak",
                "personal_best",
                "asymmetry_resolved",
                "symmetry_restored",
                "limb_caught_up",
                "cross_metric_gain",
            ],
        },
        "title": _STRING,
        "description": _STRING,
        "metrics": _STRING_LIST,
        "celebrationLevel": {"type": "string", "enum": ["major", "minor"]},
    },
    "required": ["type", "title", "metrics"],
}

REGRESSION_SCHEMA = {
    "type": "object",
    "properties": {
        "id": _STRING,
        "metricName": _STRING,
        "declinePercentage": _NUMBER,
        "isClinicallySignificant": {"type": "boolean"},
        "possibleReasons": _STRING_LIST,
        "recommendations": _STRING_LIST,
    },
    "required": ["metricName", "declinePercentage"],
}

PROJECTION_SCHEMA = {
    "type": "object",
    "properties": {
        "metricName": _STRING,
        "projectedValue": _NUMBER,
        "targetDate": _NUMBER,
        "confidence": _NUMBER,
        "assumptions": _STRING_LIST,
    },
    "required": ["metricName", "projectedValue"],
}

PROGRESS_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "trends": {"type": "array", "items": TREND_SCHEMA},
        "milestones": {"type": "array", "items": MILESTONE_SCHEMA},
        "regressions": {"type": "array", "items": REGRESSION_SCHEMA},
        "projections": {"type": "array", "items": PROJECTION_SCHEMA},
        "summary": _STRING,
    },
    "required": ["trends", "summary"],
}

RESPONSE_SCHEMAS = {
    "decomposition": DECOMPOSITION_RESPONSE_SCHEMA,
    "research": RESEARCH_RESPONSE_SCHEMA,
    "analysis": ANALYSIS_RESPONSE_SCHEMA,
    "progress": PROGRESS_RESPONSE_SCHEMA,
}
