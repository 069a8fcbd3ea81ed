"""
Closed catalog of node component types and their default configs.

The (category, component type) pairs are a contract shared with the
execution backend, so the catalog is fixed at import time. Every node gets
a fresh copy of its default config when created, so downstream code never
sees a node with missing required keys.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from workflow_engine.errors import UnknownNodeTypeError
from workflow_engine.schema.models import NodeCategory


@dataclass(frozen=True)
class NodeTypeDefinition:
    category: NodeCategory
    component_type: str
    title: str
    description: str = ""
    default_config: Dict[str, Any] = field(default_factory=dict)

    def make_config(self) -> Dict[str, Any]:
        return copy.deepcopy(self.default_config)


_FILE_SOURCE = {"fileId": None, "filename": None, "hasHeaders": True, "delimiter": ","}
_AI_BASE = {"aiProvider": "openai", "modelName": "gpt-4o", "prompt": ""}

# Used for component types that have no specific default
CATEGORY_BASE_CONFIG: Dict[NodeCategory, Dict[str, Any]] = {
    NodeCategory.input: {"source": ""},
    NodeCategory.processing: {"transformations": []},
    NodeCategory.ai: dict(_AI_BASE),
    NodeCategory.output: {"format": "json", "destination": "download"},
    NodeCategory.integration: {"connectionId": None, "operation": "", "parameters": {}},
    NodeCategory.control: {"condition": ""},
    NodeCategory.utility: {},
}

SPECIFIC_CONFIG: Dict[str, Dict[str, Any]] = {
    "dataInput": {"source": "", "schema": []},
    "fileUpload": dict(_FILE_SOURCE),
    "directUpload": dict(_FILE_SOURCE),
    "spreadsheetGenerator": {"filename": "", "fileExtension": "xlsx", "sheets": []},
    "dataProcessing": {"transformations": []},
    "filtering": {"column": "", "operator": "equals", "value": "", "caseSensitive": False},
    "sorting": {"sortColumn": "", "direction": "asc"},
    "aggregation": {"groupByColumn": "", "aggregations": []},
    "formulaCalculation": {"formula": "", "outputColumn": "result"},
    "dataTypeConversion": {"conversions": []},
    "aiNode": {**_AI_BASE, "prompt": "Analyze the following data:"},
    "askAI": {**_AI_BASE, "systemMessage": "You are a helpful assistant."},
    "outputNode": {"format": "json", "destination": "download"},
    "ifElseCondition": {"condition": "", "trueLabel": "true", "falseLabel": "false"},
    "waitPause": {"delaySeconds": 0},
    "retryMechanism": {"maxRetries": 3, "delaySeconds": 1},
}

_CATALOG_ENTRIES: Dict[NodeCategory, List[Tuple[str, str, str]]] = {
    NodeCategory.input: [
        ("dataInput", "Data Input", "Import data from external sources"),
        ("fileUpload", "File Upload", "Accepts Excel, CSV, JSON, or other structured files"),
        ("directUpload", "Direct File Upload", "Upload a file straight into the workflow"),
        ("databaseQuery", "Database Query", "Fetches data from SQL/NoSQL databases"),
        ("manualEntry", "Manual Data Entry", "Allows users to input values manually"),
        ("apiFetch", "API Fetch", "Retrieves data from external APIs"),
        ("webhookListener", "Webhook Listener", "Triggers a workflow when an external service sends data"),
        ("ftpImport", "FTP/SFTP Import", "Pulls data from remote file servers"),
        ("emailAttachment", "Email Attachment", "Extracts data from email attachments"),
        ("formSubmission", "Form Submission", "Captures user form inputs"),
        ("scheduledFetch", "Scheduled Fetch", "Runs periodic data retrieval"),
        ("spreadsheetImport", "Spreadsheet Import", "Loads data from Google Sheets/Excel"),
        ("crmDataPull", "CRM Data Pull", "Retrieves leads, deals, or contacts from a CRM"),
        ("erpDataFetch", "ERP Data Fetch", "Imports financial or inventory data from ERP systems"),
        ("spreadsheetGenerator", "Spreadsheet Generator", "Generate Excel or CSV files"),
    ],
    NodeCategory.processing: [
        ("dataProcessing", "Data Processing", "Apply a sequence of transformations"),
        ("filtering", "Filtering", "Filter data based on specified conditions"),
        ("sorting", "Sorting", "Orders data based on specified criteria"),
        ("aggregation", "Aggregation", "Computes sums, averages, counts, etc."),
        ("formulaCalculation", "Formula Calculation", "Applies Excel-like formulas to data"),
        ("textTransformation", "Text Transformation", "Applies string operations"),
        ("dataTypeConversion", "Data Type Conversion", "Converts text to numbers, dates, etc."),
        ("dateFormatting", "Date Formatting", "Converts timestamps or applies date formats"),
        ("joinMerge", "Join/Merge Datasets", "Combines data from multiple sources"),
        ("pivotTable", "Pivot Table Creation", "Restructures tabular data"),
        ("deduplication", "Deduplication", "Removes duplicate entries"),
    ],
    NodeCategory.ai: [
        ("aiNode", "AI Node", "Apply AI and ML algorithms to data"),
        ("askAI", "Ask AI", "Ask questions to AI models like OpenAI, Claude, or Deepseek"),
        ("aiSummarization", "AI Summarization", "Summarize text or numerical data"),
        ("sentimentAnalysis", "Sentiment Analysis", "Classifies text as positive, negative, or neutral"),
        ("namedEntityRecognition", "Named Entity Recognition", "Extracts names, dates, locations from text"),
        ("anomalyDetection", "Anomaly Detection", "Identifies outliers in datasets"),
        ("forecasting", "Forecasting & Predictions", "Uses ML models to predict trends"),
        ("documentParsing", "Document Parsing (OCR)", "Converts PDFs or images to structured text"),
        ("clustering", "Clustering & Segmentation", "Groups similar data points"),
        ("mlModelExecution", "Machine Learning Model Execution", "Runs a custom ML model"),
        ("featureEngineering", "Feature Engineering", "Transforms raw data for ML analysis"),
        ("aiDataCleaning", "AI-powered Data Cleaning", "Automatically corrects inconsistencies"),
    ],
    NodeCategory.output: [
        ("outputNode", "Output Node", "Export or visualize processed data"),
        ("downloadFile", "Download File", "Provides a processed file for download"),
        ("sendEmail", "Send Email", "Sends processed data via email"),
        ("exportToDatabase", "Export to Database", "Saves structured data into databases"),
        ("webhookTrigger", "Webhook Trigger", "Sends processed data to an external API"),
        ("pushNotification", "Push Notification", "Sends alerts to users"),
        ("excelExport", "Excel File Export", "Creates an Excel report with structured data"),
        ("pdfGeneration", "PDF Report Generation", "Converts processed data into a formatted PDF"),
        ("googleSheetsUpdate", "Google Sheets Update", "Writes output data to Google Sheets"),
        ("ftpUpload", "FTP/SFTP Upload", "Sends processed files to a remote server"),
        ("crmUpdate", "CRM Update", "Updates contacts, deals, or notes in a CRM system"),
        ("erpDataSync", "ERP Data Sync", "Sends processed financial data back to ERP"),
        ("slackNotification", "Slack/Teams Notification", "Posts messages to collaboration tools"),
        ("webhookResponse", "Webhook Response", "Sends back data to a requester"),
        ("apiResponse", "API Response", "Returns structured data via an API"),
        ("smsAlert", "SMS Alert", "Sends text message notifications"),
    ],
    NodeCategory.integration: [
        ("integrationNode", "Integration Node", "Connect with external services"),
        ("salesforceConnector", "Salesforce Connector", "Fetch or update CRM data"),
        ("xeroConnector", "Xero Connector", "Pull accounting data or push invoices"),
        ("hubspotConnector", "HubSpot Connector", "Integrate with marketing/sales data"),
        ("googleSheetsConnector", "Google Sheets Connector", "Sync data with Google Sheets"),
        ("stripeConnector", "Stripe Connector", "Fetch payment transactions"),
        ("quickbooksConnector", "QuickBooks Connector", "Access financial data"),
        ("zendeskConnector", "Zendesk Connector", "Fetch support ticket data"),
        ("shopifyConnector", "Shopify Connector", "Retrieve e-commerce order data"),
        ("s3Connector", "AWS S3 Connector", "Read/write files in cloud storage"),
        ("zapierConnector", "Zapier Connector", "Connect to thousands of third-party apps"),
        ("googleDriveConnector", "Google Drive API", "Read/write files in Google Drive"),
        ("customApiConnector", "Custom API Connector", "Generic node to fetch from any API"),
        ("erpConnector", "ERP System Connector", "Fetch or push enterprise data"),
        ("twilioConnector", "Twilio Connector", "Send SMS or make calls"),
        ("powerBiConnector", "Power BI Connector", "Send processed data for visualization"),
    ],
    NodeCategory.control: [
        ("controlNode", "Control Node", "Control the workflow execution path"),
        ("ifElseCondition", "If-Else Condition", "Executes different branches based on logic"),
        ("loopForEach", "Loop / For Each", "Iterates over data items"),
        ("parallelProcessing", "Parallel Processing", "Runs multiple steps simultaneously"),
        ("errorHandling", "Error Handling", "Catches and handles errors in execution"),
        ("waitPause", "Wait/Pause Step", "Introduces a delay before proceeding"),
        ("webhookWait", "Webhook Wait", "Pauses execution until an external event occurs"),
        ("retryMechanism", "Retry Mechanism", "Retries failed steps"),
        ("switchCase", "Switch Case", "Routes execution based on predefined conditions"),
    ],
    NodeCategory.utility: [
        ("utilityNode", "Utility", "General purpose helper step"),
        ("logToConsole", "Log to Console", "Outputs debug information"),
        ("executionTimestamp", "Execution Timestamp", "Captures execution time"),
        ("sessionManagement", "Session Management", "Tracks user interactions over time"),
        ("variableStorage", "Variable Storage", "Stores temporary values for later steps"),
        ("aiStepRecommendation", "AI-based Step Recommendation", "Suggests next workflow steps"),
        ("workflowVersionControl", "Workflow Version Control", "Saves different versions of a workflow"),
        ("performanceMetrics", "Performance Metrics Collection", "Measures step execution times"),
    ],
}


def _build_definitions() -> List[NodeTypeDefinition]:
    definitions = []
    for category, items in _CATALOG_ENTRIES.items():
        for component_type, title, description in items:
            default = SPECIFIC_CONFIG.get(component_type, CATEGORY_BASE_CONFIG[category])
            definitions.append(
                NodeTypeDefinition(
                    category=category,
                    component_type=component_type,
                    title=title,
                    description=description,
                    default_config=copy.deepcopy(default),
                )
            )
    return definitions


class NodeConfigStore:
    """
    Lookup of node type definitions by (category, component type).
    """

    def __init__(self, definitions: Optional[Iterable[NodeTypeDefinition]] = None) -> None:
        self._definitions: Dict[Tuple[NodeCategory, str], NodeTypeDefinition] = {}
        for definition in definitions if definitions is not None else _build_definitions():
            self._definitions[(definition.category, definition.component_type)] = definition

    def get(self, category: NodeCategory | str, component_type: str) -> NodeTypeDefinition:
        try:
            key = (NodeCategory(category), component_type)
        except ValueError as exc:
            raise UnknownNodeTypeError(f"Unknown node category '{category}'") from exc
        try:
            return self._definitions[key]
        except KeyError as exc:
            raise UnknownNodeTypeError(
                f"Component type '{component_type}' is not part of category '{key[0].value}'"
            ) from exc

    def is_known(self, category: NodeCategory | str, component_type: str) -> bool:
        try:
            self.get(category, component_type)
        except UnknownNodeTypeError:
            return False
        return True

    def default_config(self, category: NodeCategory | str, component_type: str) -> Dict[str, Any]:
        return self.get(category, component_type).make_config()

    def default_label(self, category: NodeCategory | str, component_type: str) -> str:
        return self.get(category, component_type).title

    def missing_keys(
        self,
        category: NodeCategory | str,
        component_type: str,
        config: Dict[str, Any],
    ) -> List[str]:
        required = self.get(category, component_type).default_config
        return [key for key in required if key not in config]

    def categories(self) -> List[NodeCategory]:
        seen: List[NodeCategory] = []
        for category, _ in self._definitions:
            if category not in seen:
                seen.append(category)
        return seen

    def list_types(self, category: Optional[NodeCategory | str] = None) -> List[NodeTypeDefinition]:
        wanted = NodeCategory(category) if category is not None else None
        return [
            definition
            for (def_category, _), definition in self._definitions.items()
            if wanted is None or def_category == wanted
        ]


_default_store: Optional[NodeConfigStore] = None


def get_node_config_store() -> NodeConfigStore:
    """Return the process-wide catalog (it is immutable, so sharing is safe)."""
    global _default_store
    if _default_store is None:
        _default_store = NodeConfigStore()
    return _default_store
